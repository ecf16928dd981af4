import os

# Network defaults
DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 3000
PING_TIMEOUT = 60
PING_INTERVAL = 25

# Client throttling
POSITION_UPDATE_INTERVAL = 0.05  # 20 updates per second

# Player defaults
DEFAULT_WEAPON = 'pistol'
SPAWN_HEIGHT = 1.6


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = 'your-secret-key'
    HOST = DEFAULT_HOST
    PORT = DEFAULT_PORT
    CORS_ALLOWED_ORIGINS = '*'
    PING_TIMEOUT = PING_TIMEOUT
    PING_INTERVAL = PING_INTERVAL
    ENGINEIO_LOGGER = False
    # Only the room host may publish enemy state
    ENFORCE_HOST_ENEMY_WRITES = True
    LOG_LEVEL = 'INFO'

    @classmethod
    def from_env(cls):
        config = cls()
        config.SECRET_KEY = os.environ.get('FPS_SECRET_KEY', cls.SECRET_KEY)
        config.HOST = os.environ.get('FPS_HOST', cls.HOST)
        config.PORT = int(os.environ.get('PORT', cls.PORT))
        config.CORS_ALLOWED_ORIGINS = os.environ.get('FPS_CORS_ORIGINS', cls.CORS_ALLOWED_ORIGINS)
        config.ENGINEIO_LOGGER = _env_bool('FPS_ENGINEIO_LOGGER', cls.ENGINEIO_LOGGER)
        config.ENFORCE_HOST_ENEMY_WRITES = _env_bool('FPS_ENFORCE_HOST', cls.ENFORCE_HOST_ENEMY_WRITES)
        config.LOG_LEVEL = os.environ.get('FPS_LOG_LEVEL', cls.LOG_LEVEL).upper()
        return config
