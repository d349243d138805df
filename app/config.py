import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Settings:
    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    # Only honoured when no webhook secret is configured (local development)
    ALLOW_UNVERIFIED_WEBHOOKS = _env_bool("ALLOW_UNVERIFIED_WEBHOOKS")
    PAYMENT_MODE = "live" if os.getenv("PAYMENT_MODE") == "live" else "sandbox"
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "gbp")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "https://localhost:4433")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookings.db")

    # Email (AWS SES)
    AWS_REGION = os.getenv("AWS_REGION", "eu-west-2")
    AWS_SES_FROM_EMAIL = os.getenv("AWS_SES_FROM_EMAIL", "namaste@threedegreeseast.com")
    ADMIN_EMAILS = [
        addr.strip()
        for addr in os.getenv("ADMIN_EMAILS", "namaste@threedegreeseast.com").split(",")
        if addr.strip()
    ]
    NOTIFICATION_CLAIM_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_CLAIM_TIMEOUT_SECONDS", "300"))

    # Accommodation catalog, prices in minor units
    ACCOMMODATION_OPTIONS = {
        "double": {"name": "Twin-Sharing", "price": 110000},
        "single": {"name": "Single Occupancy", "price": 90000},
    }
    INITIAL_INVENTORY = {
        "double": int(os.getenv("MAX_TWIN_SHARING_SPOTS", "10")),
        "single": int(os.getenv("MAX_SINGLE_OCCUPANCY_SPOTS", "7")),
    }

    @property
    def return_url(self) -> str:
        return f"{self.FRONTEND_URL.rstrip('/')}/booking/confirmation"


settings = Settings()
