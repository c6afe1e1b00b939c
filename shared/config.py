"""Shared configuration."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all storefront services."""

    # Service info
    service_name: str = "storefront-service"
    service_port: int = 8000

    # Database (all services share one relational store)
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "storefront"
    database_echo: bool = False

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Printify (print-on-demand fulfillment)
    printify_access_token: str = ""
    printify_shop_id: int = 0
    printify_api_url: str = "https://api.printify.com/v1"
    printify_max_requests: int = 600
    printify_window_seconds: float = 60.0

    # PayPal
    paypal_client_id: str = ""
    paypal_app_secret: str = ""
    paypal_api_url: str = "https://api-m.sandbox.paypal.com"
    currency: str = "USD"

    # Outbound HTTP
    http_timeout: float = 30.0

    # Inventory / fulfillment
    cart_reservation_ttl_hours: int = 24
    reservation_cleanup_interval_seconds: float = 3600.0
    fulfillment_concurrency: int = 4

    # Notifications
    admin_email: str = "admin@example.com"

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
