from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    DATABASE_URL: str
    DB_CREATE_ALL: bool = False
    DATABASE_SSL: bool = True
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    JWT_SECRET_KEY: str = "dev-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Token firmado del ticket (QR) que el kiosko escanea
    TICKET_TOKEN_TTL_MINUTES: int = 5

    # Reglas de la sesión de servicio
    DEFAULT_AVG_SERVICE_MINUTES: int = 5
    DEFAULT_GRACE_PERIOD_MINUTES: int = 5
    MIN_SESSION_MINUTES: int = 15
    CLOSING_WINDOW_MINUTES: int = 15

    # Scheduler: inprocess | celery | off
    SCHEDULER_MODE: str = "inprocess"
    SCHEDULER_INTERVAL_SECONDS: int = 10
    RECONCILE_INTERVAL_SECONDS: int = 600

    # Push notifications (FCM legacy HTTP o gateway compatible)
    PUSH_GATEWAY_URL: str = "https://fcm.googleapis.com/fcm/send"
    PUSH_SERVER_KEY: str = ""
    PUSH_TIMEOUT_SECONDS: float = 10.0

    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: Optional[str] = None  # default: REDIS_URL

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignorar campos extra en .env que no están en el modelo

settings = Settings()
