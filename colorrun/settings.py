from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Security
    COLORRUN_ADMIN_USERNAME: str = "admin"
    COLORRUN_ADMIN_PASSWORD: str = "change-me"
    COLORRUN_ADMIN_EMAIL: str = "admin@example.com"
    COLORRUN_SECRET_KEY: str = "dev-secret-change-me"
    # only enable behind a reverse proxy that sets X-Forwarded-For itself
    TRUST_PROXY_HEADERS: bool = False

    # Race pack claiming
    CLAIM_PASSWORD: str = ""
    STAFF_CLAIM_PASSWORD: str = ""

    # Database
    COLORRUN_DB_URL: str = "sqlite:///./colorrun.db"
    SEED_ON_STARTUP: bool = True

    # Registration rules
    COMMUNITY_MIN_PARTICIPANTS: int = 10

    # Uploads
    UPLOAD_DIR: str = "./uploads"
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    # Email
    APP_URL: str = "http://localhost:8000"
    EMAIL_HOST: str = "smtp.gmail.com"
    EMAIL_PORT: int = 465
    EMAIL_SECURE: bool = True
    EMAIL_USER: str = ""
    EMAIL_PASS: str = ""
    EMAIL_FROM_NAME: str = "Ciputra Color Run"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
