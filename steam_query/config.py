"""
Configuration for steam_query
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _getbool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Query client configuration"""

    # Server queries (seconds)
    QUERY_TIMEOUT = float(os.getenv('QUERY_TIMEOUT', '3.0'))

    # Upper bound for the optional secondary info reply wait (seconds)
    LEGACY_INFO_TIMEOUT = float(os.getenv('LEGACY_INFO_TIMEOUT', '0.5'))

    # Master server (directory)
    MASTER_HOST = os.getenv('MASTER_HOST', 'hl2master.steampowered.com')
    MASTER_PORT = int(os.getenv('MASTER_PORT', '27011'))
    MASTER_QUANTITY = int(os.getenv('MASTER_QUANTITY', '200'))

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    ENABLE_WARNS = _getbool('ENABLE_WARNS')

    def __repr__(self):
        return (
            f"<Config timeout={self.QUERY_TIMEOUT} "
            f"master={self.MASTER_HOST}:{self.MASTER_PORT}>"
        )


# Singleton instance
config = Config()
