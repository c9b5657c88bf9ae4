from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    UniqueConstraint,
    Index,
)

from ..config import FRIEND_DISCOUNT_DEFAULT


Base = declarative_base()

# payment_status values
PENDING = "pending"
PAID_AWAITING_VERIFICATION = "paid_awaiting_verification"
VERIFIED = "verified"
COMPLETED = "completed"
FAILED = "failed"

PAYMENT_STATUSES = (
    PENDING, PAID_AWAITING_VERIFICATION, VERIFIED, COMPLETED, FAILED
)
ACTIVE_STATUSES = (VERIFIED, COMPLETED)


# ----------------------------
# ORM models
# ----------------------------
class Registration(Base):
    __tablename__ = "registrations"
    id = Column(String, primary_key=True)

    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=False)
    college = Column(String, nullable=False)
    year = Column(String, nullable=False)

    payment_status = Column(String, nullable=False, default=PENDING)
    payment_method = Column(String, nullable=False, default="gateway")

    # paise
    amount = Column(Integer, nullable=False)
    original_amount = Column(Integer, nullable=False)
    friend_discount_applied = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="INR")

    is_group_booking = Column(Boolean, nullable=False, default=False)
    ticket_quantity = Column(Integer, nullable=False, default=1)

    is_friend_referral = Column(Boolean, nullable=False, default=False)
    referrer_id = Column(String, ForeignKey("registrations.id"),
                         nullable=True)
    has_referred_friend = Column(Boolean, nullable=False, default=False)

    ticket_number = Column(String, nullable=True, unique=True)

    # manual UPI path
    upi_transaction_id = Column(String, nullable=True)
    payment_screenshot = Column(Text, nullable=True)
    payment_submitted_at = Column(Float, nullable=True)

    # gateway path
    gateway_order_id = Column(String, nullable=True, unique=True)
    gateway_payment_id = Column(String, nullable=True)

    # admin review
    admin_notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    verified_at = Column(Float, nullable=True)
    verified_by = Column(String, nullable=True)

    email_sent_at = Column(Float, nullable=True)
    # set while one caller owns sending the ticket email
    notifying_at = Column(Float, nullable=True)
    notification_error = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    group_members = relationship(
        "GroupMember",
        order_by="GroupMember.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_registrations_status", "payment_status"),
    )


class GroupMember(Base):
    __tablename__ = "group_members"
    id = Column(String, primary_key=True)
    registration_id = Column(
        String, ForeignKey("registrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    position = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    college = Column(String, nullable=False)
    year = Column(String, nullable=False)
    ticket_number = Column(String, nullable=True, unique=True)

    __table_args__ = (
        UniqueConstraint("registration_id", "position"),
    )


class IssuedTicket(Base):
    # one row per ticket number ever handed out, across primaries and members
    __tablename__ = "issued_tickets"
    ticket_number = Column(String, primary_key=True)
    registration_id = Column(
        String, ForeignKey("registrations.id"), nullable=False
    )
    member_id = Column(String, ForeignKey("group_members.id"), nullable=True)
    issued_at = Column(Float, nullable=False)


class EventEntry(Base):
    __tablename__ = "event_entries"
    id = Column(String, primary_key=True)
    registration_id = Column(
        String, ForeignKey("registrations.id"), nullable=False
    )
    ticket_number = Column(String, nullable=False)
    day = Column(Integer, nullable=False)
    member_id = Column(String, nullable=True)

    attendee_name = Column(String, nullable=False)
    attendee_email = Column(String, nullable=False)
    attendee_college = Column(String, nullable=True)
    attendee_year = Column(String, nullable=True)
    booking_email = Column(String, nullable=True)

    entry_at = Column(Float, nullable=False)
    scanned_by = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("ticket_number", "day",
                         name="uq_event_entries_ticket_day"),
        Index("ix_event_entries_day", "day", "entry_at"),
    )


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    description = Column(String, nullable=False, default="")
    modified_by = Column(String, nullable=False, default="system")
    modified_at = Column(Float, nullable=False)


class OtpChallengeRow(Base):
    # used by the 'pg' OTP backend only
    __tablename__ = "otp_challenges"
    email = Column(String, primary_key=True)
    challenge_id = Column(String, nullable=False)
    code = Column(String, nullable=False)
    purpose = Column(String, nullable=False)
    expires_at = Column(Float, nullable=False)
    consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(Float, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class OtpRequestLog(Base):
    __tablename__ = "otp_requests"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)


DEFAULT_SETTINGS = {
    "friend_offer_enabled": (True, "Enable/Disable friend referral offer"),
    "friend_discount_amount": (
        FRIEND_DISCOUNT_DEFAULT, "Discount amount for friend referrals"
    ),
}
