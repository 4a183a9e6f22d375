"""
config.py
~~~~~~~~~

Runtime settings read from environment variables.

- LOG_LEVEL: logging level name (default INFO)
- FLASK_ENV: 'production' quiets third-party loggers
- PORT: HTTP port (default 8000)
- PATTERNNET_MODEL_DIR: directory of the SQLite model store (default 'models')
- SOCKETIO_ASYNC_MODE: Flask-SocketIO async mode (default 'gevent')
- PATTERNNET_BACKGROUND_TRAINING: run training jobs as background tasks
  (default true)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

_TRUTHY = {'1', 'true', 'yes', 'on'}


@dataclass(frozen=True)
class Settings:
    log_level: str = 'INFO'
    is_production: bool = False
    port: int = 8000
    model_dir: str = 'models'
    async_mode: str = 'gevent'
    background_training: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        return cls(
            log_level=env.get('LOG_LEVEL', 'INFO').upper(),
            is_production=env.get('FLASK_ENV') == 'production',
            port=int(env.get('PORT', 8000)),
            model_dir=env.get('PATTERNNET_MODEL_DIR', 'models'),
            async_mode=env.get('SOCKETIO_ASYNC_MODE', 'gevent'),
            background_training=(
                env.get('PATTERNNET_BACKGROUND_TRAINING', 'true').lower() in _TRUTHY
            ),
        )
