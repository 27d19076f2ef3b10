import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///claimflow.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
    EXCHANGE_API_URL = os.environ.get(
        "EXCHANGE_API_URL", "https://api.exchangerate-api.com/v4/latest/{base}"
    )
    REST_COUNTRIES_URL = os.environ.get(
        "REST_COUNTRIES_URL", "https://restcountries.com/v3.1/all?fields=name,currencies"
    )
    CURRENCY_TIMEOUT_SECONDS = float(os.environ.get("CURRENCY_TIMEOUT_SECONDS", 10))
    ROUTING_MAX_RETRIES = int(os.environ.get("ROUTING_MAX_RETRIES", 3))
    ALLOW_SPECIFIC_APPROVER_OUT_OF_SEQUENCE = os.environ.get(
        "ALLOW_SPECIFIC_APPROVER_OUT_OF_SEQUENCE", "false"
    ).lower() in {"1", "true", "yes"}
    TESSERACT_CMD = os.environ.get("TESSERACT_CMD")


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "WARNING"


class ProductionConfig(Config):
    DEBUG = False


config_by_name = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
