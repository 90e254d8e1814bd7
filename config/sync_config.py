#!/usr/bin/env python3
"""
Configuration Manager for dbreplica
Handles environment variables and .env files centrally
"""

import os
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass

ENV_PREFIX = 'DBREPLICA_'

@dataclass
class SyncConfig:
    """dbreplica configuration settings"""

    base_dir: Path = None

    # Runtime settings
    log_level: str = "INFO"

    # Introspection settings
    schema: str = "public"
    fetch_workers: int = 4
    source_isolation: Optional[str] = None  # e.g. "REPEATABLE READ"; None keeps server default

    # Apply settings
    apply_workers: int = 4
    type_error_policy: str = "abort"  # abort, skip

    # Connection settings (seconds)
    connect_timeout: int = 10
    statement_timeout: int = 0  # 0 disables

    # Debug artifacts
    dump_dir: Optional[Path] = None

    def __post_init__(self):
        """Resolve paths and load environment variables"""
        if self.base_dir is None:
            default_root = Path(__file__).parent.parent
            self.base_dir = Path(os.environ.get(f'{ENV_PREFIX}HOME', default_root))
        else:
            self.base_dir = Path(self.base_dir)

        self.log_level = os.environ.get(f'{ENV_PREFIX}LOG_LEVEL', self.log_level).upper()
        self.schema = os.environ.get(f'{ENV_PREFIX}SCHEMA', self.schema)
        self.fetch_workers = int(os.environ.get(f'{ENV_PREFIX}FETCH_WORKERS', str(self.fetch_workers)))
        self.apply_workers = int(os.environ.get(f'{ENV_PREFIX}APPLY_WORKERS', str(self.apply_workers)))
        self.type_error_policy = os.environ.get(f'{ENV_PREFIX}TYPE_ERROR_POLICY', self.type_error_policy).lower()
        self.connect_timeout = int(os.environ.get(f'{ENV_PREFIX}CONNECT_TIMEOUT', str(self.connect_timeout)))
        self.statement_timeout = int(os.environ.get(f'{ENV_PREFIX}STATEMENT_TIMEOUT', str(self.statement_timeout)))

        isolation = os.environ.get(f'{ENV_PREFIX}SOURCE_ISOLATION')
        if isolation:
            self.source_isolation = isolation.upper()

        dump_dir = os.environ.get(f'{ENV_PREFIX}DUMP_DIR')
        if dump_dir:
            self.dump_dir = Path(dump_dir)

        self.validate()

    def validate(self):
        """Reject settings the pipeline cannot honour"""
        if self.type_error_policy not in ('abort', 'skip'):
            raise ValueError(f"{ENV_PREFIX}TYPE_ERROR_POLICY must be 'abort' or 'skip', "
                             f"got '{self.type_error_policy}'")
        if self.fetch_workers < 1 or self.apply_workers < 1:
            raise ValueError("Worker counts must be at least 1")
        if self.statement_timeout < 0 or self.connect_timeout < 0:
            raise ValueError("Timeouts must not be negative")

    def get_safe_dict(self) -> Dict[str, Any]:
        """Get configuration as a plain dict (side-effect free)"""
        return {
            'base_dir': str(self.base_dir),
            'log_level': self.log_level,
            'schema': self.schema,
            'fetch_workers': self.fetch_workers,
            'source_isolation': self.source_isolation,
            'apply_workers': self.apply_workers,
            'type_error_policy': self.type_error_policy,
            'connect_timeout': self.connect_timeout,
            'statement_timeout': self.statement_timeout,
            'dump_dir': str(self.dump_dir) if self.dump_dir else None,
        }

class ConfigManager:
    """Singleton configuration manager"""

    _instance: Optional['ConfigManager'] = None
    _config: Optional[SyncConfig] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load_config()

    def load_config(self):
        """Load configuration from the environment.

        Priority (highest to lowest):
        1. Environment variables (DBREPLICA_*)
        2. .env file in DBREPLICA_HOME (loaded into os.environ first)
        3. SyncConfig dataclass defaults
        """
        default_base = Path(__file__).parent.parent
        base_dir = Path(os.environ.get(f'{ENV_PREFIX}HOME', default_base))
        env_file = base_dir / '.env'
        if env_file.exists():
            self._load_env_file(env_file)

        self._config = SyncConfig()

    def reload(self) -> SyncConfig:
        self._config = None
        self.load_config()
        return self._config

    def _load_env_file(self, env_file: Path):
        """Load environment variables from .env file.

        Only sets values for keys not already in os.environ,
        ensuring exported env vars take precedence over .env file.
        """
        with open(env_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    if key not in os.environ:
                        os.environ[key] = value.strip()

    @property
    def config(self) -> SyncConfig:
        """Get the current configuration"""
        if self._config is None:
            self.load_config()
        return self._config


def get_config() -> SyncConfig:
    """Get the global configuration instance"""
    return ConfigManager().config
