"""
Operations layer.

Business logic that composes database access into tournament workflows.
Operations handle multi-step transactions, validation and state transitions
while the command layer stays a thin Discord adapter.

- BracketOperations: bracket creation, round generation and promotion
- SubmissionOperations: result intake, arbitration and admin overrides
- AdminOperations: permission-checked, audited facade used by the cogs
"""
