"""
SecureHealth Chain - System Configuration

Settings are read from environment variables once, at deployment time.
"""

from dataclasses import dataclass
from typing import Optional
import os

ZERO_PRINCIPAL = "0x0000000000000000000000000000000000000000"
DEFAULT_DEPLOYER = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"


def _env_int(key: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class SystemConfig:
    """Deployment settings."""
    system_secret: bytes = b"SHC_DEVELOPMENT_SECRET_ROTATE_BEFORE_DEPLOY"
    deployer: str = DEFAULT_DEPLOYER
    log_level: str = "INFO"
    genesis_time: Optional[int] = None  # None -> wall clock at first transition
    api_host: str = "0.0.0.0"
    api_port: int = 3001

    @classmethod
    def from_env(cls) -> "SystemConfig":
        """Build config from SHC_* environment variables."""
        defaults = cls()
        secret = os.getenv("SHC_SYSTEM_SECRET")
        return cls(
            system_secret=secret.encode() if secret else defaults.system_secret,
            deployer=os.getenv("SHC_DEPLOYER", defaults.deployer).strip().lower(),
            log_level=os.getenv("SHC_LOG_LEVEL", defaults.log_level).upper(),
            genesis_time=_env_int("SHC_GENESIS_TIME", defaults.genesis_time),
            api_host=os.getenv("SHC_API_HOST", defaults.api_host),
            api_port=_env_int("SHC_API_PORT", defaults.api_port),
        )
