from __future__ import annotations

from app.services.messaging.base import MessagingService
from app.services.messaging.twilio import TwilioWhatsAppService, normalize_whatsapp_number

__all__ = ["MessagingService", "TwilioWhatsAppService", "normalize_whatsapp_number"]
