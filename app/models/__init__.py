from app.models.base import Base
from app.models.billing_event import BillingEventRecord
from app.models.payment_record import PaymentRecord
from app.models.subscription import Subscription
from app.models.transcription import Transcription
from app.models.user import User

__all__ = ["Base", "User", "Subscription", "Transcription", "PaymentRecord", "BillingEventRecord"]
