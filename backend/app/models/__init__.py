from app.models.booking import BookingIntent, OrderRecord, OrderRevision, ProviderBooking

__all__ = [
    "BookingIntent",
    "OrderRecord",
    "OrderRevision",
    "ProviderBooking",
]
