#!/usr/bin/env python3
"""
Configuration - an explicit value threaded through every component

Nothing here is global. Build a CadenceConfig once at startup (usually with
CadenceConfig.from_env()) and hand it to the constructors that need it.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

DEVELOPMENT = 'development'
PRODUCTION = 'production'


@dataclass(frozen=True)
class CadenceConfig:
    """Application level options"""
    mode: str = DEVELOPMENT
    port: int = 5000
    db_path: str = '/app/data/cadence.db'
    # Seconds SQLite waits on a locked database before giving up
    store_timeout: float = 5.0
    impostor_sample_size: int = 200
    genuine_sample_size: int = 50
    # A phrase is usable for authentication once strictly more users than this trained on it
    auth_min_participants: int = 5
    persist_on_miss: bool = True

    def __post_init__(self):
        if self.mode not in (DEVELOPMENT, PRODUCTION):
            raise ValueError(f"Unknown mode: {self.mode!r}")
        if self.impostor_sample_size < 0 or self.genuine_sample_size < 0:
            raise ValueError("Sample sizes must be non-negative")

    @property
    def is_development(self) -> bool:
        return self.mode == DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.mode == PRODUCTION

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'CadenceConfig':
        """
        Compute the configuration from the environment

        PRODUCTION=yes selects production mode, PORT sets the port,
        CADENCE_DB_PATH and CADENCE_STORE_TIMEOUT locate and tune the store.
        Keyword overrides take precedence over the environment.
        """
        env = os.environ if environ is None else environ
        values = {
            'mode': PRODUCTION if env.get('PRODUCTION', 'no') == 'yes' else DEVELOPMENT,
            'port': int(env.get('PORT', '5000')),
            'db_path': env.get('CADENCE_DB_PATH', cls.db_path),
            'store_timeout': float(env.get('CADENCE_STORE_TIMEOUT', cls.store_timeout)),
        }
        values.update(overrides)
        return cls(**values)

    def merge(self, **changes) -> 'CadenceConfig':
        """Return a copy with the given fields replaced"""
        return replace(self, **changes)
