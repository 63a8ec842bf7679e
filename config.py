# Rollcall QR Attendance Configuration

import os
from datetime import timedelta
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_flag(name, default='False'):
    return os.environ.get(name, default).lower() in ['true', 'on', '1']


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'rollcall-dev-secret-key'

    # Backend Configuration ('sqlite' for local development, 'supabase' for hosted)
    BACKEND = os.environ.get('ROLLCALL_BACKEND') or 'sqlite'
    DATABASE_PATH = BASE_DIR / 'database' / 'rollcall.db'
    SUPABASE_URL = os.environ.get('SUPABASE_URL')
    SUPABASE_KEY = os.environ.get('SUPABASE_KEY')

    # Attendance Session Configuration
    SESSION_DURATION_MINUTES = int(os.environ.get('SESSION_DURATION_MINUTES') or 60)
    QR_TOKEN_BYTES = 32
    INVITE_CODE_LENGTH = 6

    # Scan URLs are built from this origin; the request host is used when unset
    PUBLIC_ORIGIN = os.environ.get('PUBLIC_ORIGIN')

    # QR Code Configuration
    QR_CODE_SIZE = 10
    QR_CODE_BORDER = 4
    QR_CODE_ERROR_CORRECT = 'M'  # Medium error correction

    # Auth Configuration
    AUTH_SESSION_HOURS = 8
    PASSWORD_MIN_LENGTH = 6

    # Session Cookie Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'rollcall.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    DEBUG = _env_flag('DEBUG')
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        if cls.BACKEND == 'sqlite' and str(cls.DATABASE_PATH) != ':memory:':
            Path(cls.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)

        app.config.update({
            'SECRET_KEY': cls.SECRET_KEY,
            'PERMANENT_SESSION_LIFETIME': cls.PERMANENT_SESSION_LIFETIME,
            'SESSION_COOKIE_SECURE': cls.SESSION_COOKIE_SECURE,
            'SESSION_COOKIE_HTTPONLY': cls.SESSION_COOKIE_HTTPONLY,
            'SESSION_COOKIE_SAMESITE': cls.SESSION_COOKIE_SAMESITE,
            'TESTING': cls.TESTING,
        })


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    DATABASE_PATH = BASE_DIR / 'database' / 'rollcall_dev.db'
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True
    BACKEND = 'sqlite'
    SECRET_KEY = 'rollcall-testing-secret-key'
    PUBLIC_ORIGIN = 'http://testserver'
    # Tests point this at a temporary file
    DATABASE_PATH = BASE_DIR / 'database' / 'rollcall_test.db'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    BACKEND = os.environ.get('ROLLCALL_BACKEND') or 'supabase'
    SESSION_COOKIE_SECURE = True  # Requires HTTPS
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        if not app.debug:
            cls.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('Rollcall startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config():
    """Get configuration based on environment variable"""
    return config.get(os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)


def validate_config(config_class):
    """Validate configuration settings"""
    errors = []

    if config_class.BACKEND not in ('sqlite', 'supabase'):
        errors.append(f"Unknown backend: {config_class.BACKEND}")

    if config_class.BACKEND == 'supabase':
        if not config_class.SUPABASE_URL:
            errors.append("SUPABASE_URL is required for the supabase backend")
        if not config_class.SUPABASE_KEY:
            errors.append("SUPABASE_KEY is required for the supabase backend")

    if config_class.SESSION_DURATION_MINUTES <= 0:
        errors.append("SESSION_DURATION_MINUTES must be positive")

    if config_class.QR_TOKEN_BYTES < 16:
        errors.append("QR_TOKEN_BYTES must be at least 16")

    return errors


def init_config(app, config_class=None):
    """Initialize application with configuration"""
    if config_class is None:
        config_class = get_config()

    config_class.init_app(app)

    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    return config_class
