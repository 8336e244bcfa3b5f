from tortoise import fields
from tortoise.models import Model

from app.schemas import BookingStatus, PaymentStatus


class Vehicle(Model):
    id = fields.UUIDField(primary_key=True)

    name = fields.CharField(max_length=200)
    category = fields.CharField(max_length=100, null=True)
    location = fields.CharField(max_length=200, null=True)

    price_per_hour = fields.DecimalField(max_digits=8, decimal_places=2)
    available = fields.BooleanField(default=True)  # catalog switch, not slot state

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        table = "vehicles"


class Booking(Model):
    id = fields.UUIDField(primary_key=True)

    vehicle_id = fields.UUIDField(db_index=True)
    user_id = fields.UUIDField(db_index=True)  # the customer who made the booking

    pickup_at = fields.DatetimeField()
    return_at = fields.DatetimeField()
    pickup_location = fields.CharField(max_length=255, null=True)

    status = fields.CharEnumField(BookingStatus, default=BookingStatus.PENDING)
    payment_status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.PENDING)

    total_hours = fields.IntField()  # billable, hour ceiling
    total_amount = fields.DecimalField(max_digits=10, decimal_places=2)  # computed
    currency = fields.CharField(max_length=3, default="INR")

    order_id = fields.CharField(max_length=64, null=True, db_index=True)
    payment_id = fields.CharField(max_length=64, null=True)

    # Special requests, plus appended cancellation/modification trail
    notes = fields.TextField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]
