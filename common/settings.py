import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    jwt_issuer: str = os.getenv("JWT_ISSUER", "deck-market")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")

    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "ledger")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    # Overrides the MySQL parts when set (e.g. sqlite:///./ledger.db for local runs)
    database_url: str = os.getenv("DATABASE_URL", "")

    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "sk_test_change_me")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_change_me")
    stripe_webhook_tolerance_seconds: int = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
    client_url: str = os.getenv("CLIENT_URL", "http://localhost:3000")
    connect_country: str = os.getenv("CONNECT_COUNTRY", "FR")
    gateway_timeout_seconds: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

    currency: str = os.getenv("CURRENCY", "eur")
    seller_share_bps: int = int(os.getenv("SELLER_SHARE_BPS", "9000"))
    platform_account_id: str = os.getenv("PLATFORM_ACCOUNT_ID", "platform")
    intent_expiry_seconds: int = int(os.getenv("INTENT_EXPIRY_SECONDS", "3600"))

    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (f"mysql+mysqlconnector://{self.mysql_user}:{self.mysql_password}"
                f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}")

settings = Settings()
