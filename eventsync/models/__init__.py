from .organization import Organization, Location
from .customer import Customer
from .staff_member import StaffMember
from .service_variation import ServiceVariation
from .order import Order, OrderLineItem, OrderState, LinkConfidence
from .booking import Booking, BookingSegment, BookingStatus, UNLINKABLE_BOOKING_STATUSES
from .payment import Payment
from .gift_card import GiftCard, GiftCardTransaction, GiftCardActivityType, ACTIVITY_SIGNS
from .retry_job import RetryJob, JobStatus, JobStage, JobOutcome
from .webhook_event import WebhookEventLog, WebhookEventStatus

__all__ = [
    "Organization", "Location",
    "Customer",
    "StaffMember",
    "ServiceVariation",
    "Order", "OrderLineItem", "OrderState", "LinkConfidence",
    "Booking", "BookingSegment", "BookingStatus", "UNLINKABLE_BOOKING_STATUSES",
    "Payment",
    "GiftCard", "GiftCardTransaction", "GiftCardActivityType", "ACTIVITY_SIGNS",
    "RetryJob", "JobStatus", "JobStage", "JobOutcome",
    "WebhookEventLog", "WebhookEventStatus",
]
