import os
from dotenv import load_dotenv
from typing import Optional

# Find the absolute path of the root directory
basedir = os.path.abspath(os.path.dirname(__file__))

# Load the .env file from the root directory
load_dotenv(os.path.join(basedir, '.env'))


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid"""
    pass


class Config:
    """
    Base configuration class. Contains default configuration settings
    and settings applicable to all environments.
    """
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'flowstack-dev-secret'
    FLASK_ENV = os.environ.get('FLASK_ENV')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    @classmethod
    def validate_required_config(cls) -> None:
        """Validate that all required configuration is present"""
        # Skip validation in testing environment or during migrations
        if os.environ.get('FLASK_ENV') == 'testing' or os.environ.get('SKIP_ENV_VALIDATION'):
            return

        required_vars = [
            'WHATSAPP_PHONE_NUMBER_ID',
            'WHATSAPP_ACCESS_TOKEN',
            'WHATSAPP_VERIFY_TOKEN',
        ]
        if not (os.environ.get('DATABASE_URL') or os.environ.get('POSTGRES_URI')):
            required_vars.append('DATABASE_URL')

        missing_vars = [var for var in required_vars if not os.environ.get(var)]
        if missing_vars:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing_vars)}"
            )

    @staticmethod
    def get_required_env(key: str) -> str:
        """Get required environment variable or raise error"""
        value = os.environ.get(key)
        if not value:
            raise ConfigurationError(f"Required environment variable {key} is not set")
        return value

    # Database settings
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or os.environ.get('POSTGRES_URI') or \
        'sqlite:///' + os.path.join(basedir, 'flowstack.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Celery (Flask loads these, the worker maps them to its lowercase settings)
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL') or os.environ.get('REDIS_URL') or 'redis://localhost:6379/0'
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND') or CELERY_BROKER_URL

    # WhatsApp Cloud API
    WHATSAPP_API_BASE_URL = os.environ.get('WHATSAPP_API_BASE_URL', 'https://graph.facebook.com/v18.0')
    WHATSAPP_PHONE_NUMBER_ID = os.environ.get('WHATSAPP_PHONE_NUMBER_ID')
    WHATSAPP_ACCESS_TOKEN = os.environ.get('WHATSAPP_ACCESS_TOKEN')
    WHATSAPP_VERIFY_TOKEN = os.environ.get('WHATSAPP_VERIFY_TOKEN')
    WHATSAPP_APP_SECRET = os.environ.get('WHATSAPP_APP_SECRET')

    # M-Pesa Daraja API
    MPESA_CONSUMER_KEY = os.environ.get('MPESA_CONSUMER_KEY')
    MPESA_CONSUMER_SECRET = os.environ.get('MPESA_CONSUMER_SECRET')
    MPESA_SHORTCODE = os.environ.get('MPESA_SHORTCODE')
    MPESA_PASSKEY = os.environ.get('MPESA_PASSKEY')
    MPESA_ENVIRONMENT = os.environ.get('MPESA_ENVIRONMENT', 'sandbox')
    CALLBACK_URL = os.environ.get('CALLBACK_URL', 'http://localhost:5000')

    # Payment lifecycle
    DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY', 'KES')
    DEFAULT_PAYMENT_EXPIRY_HOURS = int(os.environ.get('DEFAULT_PAYMENT_EXPIRY_HOURS', '48'))

    # Follow-up delivery
    FOLLOW_UP_MAX_ATTEMPTS = int(os.environ.get('FOLLOW_UP_MAX_ATTEMPTS', '3'))
    FOLLOW_UP_RETRY_BASE_SECONDS = int(os.environ.get('FOLLOW_UP_RETRY_BASE_SECONDS', '2'))
    FOLLOW_UP_CLAIM_TIMEOUT_SECONDS = int(os.environ.get('FOLLOW_UP_CLAIM_TIMEOUT_SECONDS', '600'))
    FOLLOW_UP_SWEEP_BATCH_SIZE = int(os.environ.get('FOLLOW_UP_SWEEP_BATCH_SIZE', '100'))

    # Application settings
    JSON_SORT_KEYS = False

    @classmethod
    def init_app(cls, app):
        """Initialize application with this config"""
        import logging
        logger = logging.getLogger(__name__)

        broker_url = app.config.get('CELERY_BROKER_URL', '')
        if '@' in broker_url:
            logger.info(f"Using Celery broker: {broker_url.split('://')[0]}://[REDACTED]@{broker_url.split('@')[1]}")
        else:
            logger.info(f"Using Celery broker: {broker_url}")


class DevelopmentConfig(Config):
    """Development environment configuration"""
    DEBUG = True
    TESTING = False

    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or \
        Config.SQLALCHEMY_DATABASE_URI

    @classmethod
    def init_app(cls, app):
        """Development-specific initialization"""
        Config.init_app(app)

        # Log to stdout in development
        import logging
        from logging import StreamHandler
        stream_handler = StreamHandler()
        stream_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(stream_handler)


class TestingConfig(Config):
    """Testing environment configuration"""
    TESTING = True
    DEBUG = True

    # Use in-memory SQLite for tests
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    # Never talk to real providers from tests
    WHATSAPP_ACCESS_TOKEN = None
    WHATSAPP_VERIFY_TOKEN = 'test-verify-token'
    WHATSAPP_APP_SECRET = None
    MPESA_CONSUMER_KEY = 'test-key'
    MPESA_CONSUMER_SECRET = 'test-secret'
    MPESA_SHORTCODE = '174379'
    MPESA_PASSKEY = 'test-passkey'

    # Use test Redis database
    CELERY_BROKER_URL = 'redis://localhost:6379/1'
    CELERY_RESULT_BACKEND = 'redis://localhost:6379/1'

    FOLLOW_UP_RETRY_BASE_SECONDS = 0

    @classmethod
    def init_app(cls, app):
        """Testing-specific initialization"""
        # Do NOT call Config.init_app for testing
        import logging
        logging.getLogger(__name__).info("Testing mode: using in-memory SQLite")


class ProductionConfig(Config):
    """Production environment configuration"""
    DEBUG = False
    TESTING = False

    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', '')

    REDIS_URL = os.environ.get('REDIS_URL', '')
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL') or REDIS_URL
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND') or REDIS_URL

    # If using rediss:// (SSL), append required parameters
    if CELERY_BROKER_URL.startswith('rediss://'):
        if 'ssl_cert_reqs' not in CELERY_BROKER_URL:
            # Use CERT_NONE for managed Redis/Valkey services
            separator = '&' if '?' in CELERY_BROKER_URL else '?'
            ssl_params = f"{separator}ssl_cert_reqs=CERT_NONE"
            CELERY_BROKER_URL += ssl_params
            CELERY_RESULT_BACKEND += ssl_params

    @classmethod
    def init_app(cls, app):
        """Production-specific initialization"""
        Config.init_app(app)

        if not cls.SQLALCHEMY_DATABASE_URI:
            cls.SQLALCHEMY_DATABASE_URI = cls.get_required_env('POSTGRES_URI')
            app.config['SQLALCHEMY_DATABASE_URI'] = cls.SQLALCHEMY_DATABASE_URI

        cls.validate_required_config()

        # Log warnings to syslog in production
        import logging
        from logging.handlers import SysLogHandler
        syslog_handler = SysLogHandler()
        syslog_handler.setLevel(logging.WARNING)
        app.logger.addHandler(syslog_handler)


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name: Optional[str] = None) -> type[Config]:
    """Get configuration class based on environment"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    return config.get(config_name, DevelopmentConfig)
