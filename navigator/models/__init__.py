from navigator.models.efile_log import EFileQueueMetadata, EFileSubmissionLog
from navigator.models.household import Household
from navigator.models.notification import Notification
from navigator.models.sms import SmsConversation, SmsMessage, SmsTenantConfig
from navigator.models.tax_return import FederalTaxReturn, MarylandTaxReturn
from navigator.models.tenant import Tenant
from navigator.models.user import User

__all__ = [
    "EFileQueueMetadata",
    "EFileSubmissionLog",
    "FederalTaxReturn",
    "Household",
    "MarylandTaxReturn",
    "Notification",
    "SmsConversation",
    "SmsMessage",
    "SmsTenantConfig",
    "Tenant",
    "User",
]
