"""
Scoring constants for the draft tournament engine.

This module contains the point tables and position markers used by standings,
awards and rankings so the formulas live in one place.
"""

class StandingsPoints:
    """Points awarded per group-stage result."""
    
    WIN = 3
    DRAW = 1
    LOSS = 0

class RankingWeights:
    """Weights for the cumulative ranking_points formula."""
    
    WIN = 3
    GOAL = 2
    ASSIST = 1
    CLEAN_SHEET = 2
    DRAFT_PARTICIPATION = 5
    MVP = 50
    TOP_SCORER = 30
    TOP_ASSISTS = 25
    BEST_GOALKEEPER = 35
    CAPTAINCY = 10
    TOURNAMENT_WIN = 100

class AwardConstants:
    """Constants for award computation."""
    
    # Clean sheets count double towards the MVP score
    MVP_CLEAN_SHEET_WEIGHT = 2
    
    # Lower-cased substrings identifying a goalkeeper position
    GOALKEEPER_MARKERS = ('gk', 'goalkeeper', 'por', 'portiere')
    
    # Positions for which a clean sheet is inferred when the team conceded zero
    DEFENSIVE_MARKERS = GOALKEEPER_MARKERS + (
        'def', 'cb', 'lb', 'rb', 'lwb', 'rwb', 'dc', 'dif', 'difensore', 'ts', 'td'
    )
