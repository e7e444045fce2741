from lunachat.models.account import Account, InvitationCode
from lunachat.models.billing import EnergyGrant, ProcessedWebhookEvent, SubscriptionRecord
from lunachat.models.conversation import ChatTurn

__all__ = [
    "Account",
    "ChatTurn",
    "EnergyGrant",
    "InvitationCode",
    "ProcessedWebhookEvent",
    "SubscriptionRecord",
]
