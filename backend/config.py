from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True
    BASE_URL: str = "https://api.foodrun.app"

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "foodrun"
    MONGO_TRANSACTIONS: bool = False   # nécessite un replica set

    # JWT (émis par le service d'auth externe)
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120

    # OTP livraison (flux legacy)
    OTP_EXPIRE_MINUTES: int = 10
    OTP_LENGTH: int = 6

    # Twilio
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_SMS_NUMBER: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY:     Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None   # en-tête Stripe-Signature
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    CURRENCY: str = "eur"

    # Commandes
    ORDER_CODE_PREFIX: str = "FRN"
    MAX_WEEKLY_CANCELLATIONS: int = 7   # seuil affiché au commerçant, semaine du lundi 00:00 UTC

    # Valeurs par défaut si le document system_settings est absent
    DEFAULT_COMMISSION_PERCENTAGE: float = 0.0
    DEFAULT_BASE_DELIVERY_FEE:     float = 0.0
    DEFAULT_PRICE_PER_KM:          float = 5.0

    # Tâches de fond
    SWEEP_INTERVAL_SECONDS: int = 60

    # Notifications
    NOTIFIER_QUEUE_SIZE: int = 1000
    PUSH_ENABLED: bool = False
    FIREBASE_CREDENTIALS_PATH: str = "firebase-service-account.json"

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],  # cherche dans backend/ puis dans la racine
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
