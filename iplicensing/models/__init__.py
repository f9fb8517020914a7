"""
Database models for the IP Licensing API
"""
from iplicensing.models.ip_asset import AssetStatus, AssetType, IpAsset, IpOwnership, OwnershipType, ScanStatus
from iplicensing.models.job import AlertSeverity, BackgroundJob, JobStatus, QueueAlert, QueueMetricSample
from iplicensing.models.license import (
    BillingFrequency,
    License,
    LicenseStatus,
    LicenseStatusHistory,
    LicenseType,
)
from iplicensing.models.media import MediaCategory, MediaItem, MediaStatus, MediaUsage
from iplicensing.models.messaging import Message, MessageThread, ThreadParticipant
from iplicensing.models.notification import (
    DigestFrequency,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
)
from iplicensing.models.payout import Payout, PayoutStatus, ProcessedWebhookEvent
from iplicensing.models.royalty import (
    RoyaltyLine,
    RoyaltyLineType,
    RoyaltyRun,
    RoyaltyRunStatus,
    RoyaltyStatement,
    RoyaltyStatementStatus,
)
from iplicensing.models.usage import LicenseUsageEvent
from iplicensing.models.user import Brand, Creator, OnboardingStatus, User, UserRole

__all__ = [
    "AlertSeverity",
    "AssetStatus",
    "AssetType",
    "BackgroundJob",
    "BillingFrequency",
    "Brand",
    "Creator",
    "DigestFrequency",
    "IpAsset",
    "IpOwnership",
    "JobStatus",
    "License",
    "LicenseStatus",
    "LicenseStatusHistory",
    "LicenseType",
    "LicenseUsageEvent",
    "MediaCategory",
    "MediaItem",
    "MediaStatus",
    "MediaUsage",
    "Message",
    "MessageThread",
    "Notification",
    "NotificationPreference",
    "NotificationPriority",
    "NotificationType",
    "OnboardingStatus",
    "OwnershipType",
    "Payout",
    "PayoutStatus",
    "ProcessedWebhookEvent",
    "QueueAlert",
    "QueueMetricSample",
    "RoyaltyLine",
    "RoyaltyLineType",
    "RoyaltyRun",
    "RoyaltyRunStatus",
    "RoyaltyStatement",
    "RoyaltyStatementStatus",
    "ScanStatus",
    "ThreadParticipant",
    "User",
    "UserRole",
]
