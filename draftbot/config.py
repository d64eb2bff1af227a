import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Bot configuration settings"""
    
    # Discord settings
    DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
    DISCORD_GUILD_ID = int(os.getenv('DISCORD_GUILD_ID', 0))
    DISCORD_GUILD_IDS = os.getenv('DISCORD_GUILD_IDS', '')  # Comma-separated for multi-guild support
    OWNER_DISCORD_ID = int(os.getenv('OWNER_DISCORD_ID', 0))
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///draft_tournament.db')
    
    # Bot settings
    COMMAND_PREFIX = os.getenv('COMMAND_PREFIX', '!')
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    
    # Scheduling settings
    SLOT_INTERVAL_MINUTES = int(os.getenv('SLOT_INTERVAL_MINUTES', 25))
    TEAMS_PER_STATION = 4  # Per-slot match cap = total teams // TEAMS_PER_STATION
    
    # Bracket settings
    MIN_ELIMINATION_TEAMS = 2
    MIN_GROUP_TEAMS = 4
    MAX_GROUP_SIZE = 4
    TEAMS_ADVANCING_PER_GROUP = 2
    
    # Walkover score awarded by an admin forfeit
    FORFEIT_WINNER_SCORE = 3
    FORFEIT_LOSER_SCORE = 0
    
    # Reward defaults used when an event has no reward settings row
    REWARDS_ENABLED = False
    REWARDS_ONLY_CAPTAINS = False
    REWARD_BASE_AMOUNT = 100
    REWARD_POSITIONS = 3
    REWARD_REDUCTION_PER_POSITION = 25
    REWARD_REDUCTION_TYPE = 'percentage'
    
    @classmethod
    def get_guild_ids(cls):
        """Get list of guild IDs for command syncing"""
        if cls.DISCORD_GUILD_IDS:
            # Multi-guild support: comma-separated IDs
            try:
                return [int(guild_id.strip()) for guild_id in cls.DISCORD_GUILD_IDS.split(',') if guild_id.strip()]
            except ValueError:
                raise ValueError("DISCORD_GUILD_IDS must be comma-separated integers")
        elif cls.DISCORD_GUILD_ID:
            return [cls.DISCORD_GUILD_ID]
        else:
            # Global sync
            return []
    
    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DISCORD_TOKEN:
            raise ValueError("DISCORD_TOKEN is required")
        if not cls.OWNER_DISCORD_ID:
            raise ValueError("OWNER_DISCORD_ID is required")
        if cls.SLOT_INTERVAL_MINUTES <= 0:
            raise ValueError("SLOT_INTERVAL_MINUTES must be positive")
