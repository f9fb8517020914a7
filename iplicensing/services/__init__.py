"""
Services for the IP Licensing API
"""
from iplicensing.services.asset_service import AssetService
from iplicensing.services.connect_service import ConnectService
from iplicensing.services.license_service import LicenseService
from iplicensing.services.media_service import MediaService
from iplicensing.services.messaging_service import MessagingService
from iplicensing.services.notification_service import NotificationService
from iplicensing.services.payout_service import PayoutService
from iplicensing.services.royalty_service import RoyaltyService
from iplicensing.services.stripe_service import StripeService
from iplicensing.services.usage_service import UsageService

__all__ = [
    "AssetService",
    "ConnectService",
    "LicenseService",
    "MediaService",
    "MessagingService",
    "NotificationService",
    "PayoutService",
    "RoyaltyService",
    "StripeService",
    "UsageService",
]
