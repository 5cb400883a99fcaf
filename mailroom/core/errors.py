"""
Mailroom Errors
===============

Exception taxonomy shared by every module.

Campaign control errors are returned to the caller and never retried.
Delivery errors are recorded per delivery and never abort a campaign.
"""


class MailroomError(Exception):
    """Base class for all Mailroom errors"""


# ===================
# CAMPAIGN CONTROL
# ===================

class CampaignControlError(MailroomError):
    """Input error raised by a campaign control operation"""

    status_code = 400

    def __init__(self, message, campaign_id=None, state=None):
        super().__init__(message)
        self.campaign_id = campaign_id
        self.state = state


class CampaignNotFoundError(CampaignControlError):
    status_code = 404


class InvalidScheduleError(CampaignControlError):
    status_code = 400


class AlreadySentError(CampaignControlError):
    """Campaign is already SENDING, SENT or CANCELLED. Duplicate ticks land here."""
    status_code = 409


class NotCancellableError(CampaignControlError):
    status_code = 409


class ImmutableCampaignError(CampaignControlError):
    status_code = 409


class InvalidStateError(CampaignControlError):
    """Operation needs the campaign in a different state"""
    status_code = 409


# ===================
# DELIVERY
# ===================

class DeliveryError(MailroomError):
    """Raised by a transport adapter for a single recipient"""

    def __init__(self, message, recipient=None):
        super().__init__(message)
        self.recipient = recipient


class TransientDeliveryError(DeliveryError):
    """Timeout, throttling or provider-side 5xx. Retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """Provider rejected the message for good (e.g. invalid address). Never retried."""


class SuppressedRecipientError(MailroomError):
    """Recipient is suppressed and is skipped at fan-out time"""

    def __init__(self, message, subscriber_id=None):
        super().__init__(message)
        self.subscriber_id = subscriber_id


# ===================
# STORAGE
# ===================

class StoreUnavailableError(MailroomError):
    """The backing database could not be reached or queried"""
    status_code = 503
