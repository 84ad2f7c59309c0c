"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.webhook_log import WebhookLog
from src.models.user_account import UserAccount
from src.models.subscription import SubscriptionRecord
from src.models.provider_credential import ProviderCredential
from src.models.product_mapping import ProductMapping

__all__ = [
    "WebhookLog",
    "UserAccount",
    "SubscriptionRecord",
    "ProviderCredential",
    "ProductMapping",
]
