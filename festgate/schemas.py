from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              str_strip_whitespace=True)


class GroupMemberIn(ApiModel):
    name: str = ""
    email: str = ""
    college: str = ""
    year: str = ""


class RegistrationCreate(ApiModel):
    name: str
    email: str
    phone: str
    college: str
    year: str
    ticket_quantity: int = 1
    group_members: List[GroupMemberIn] = Field(default_factory=list)
    payment_method: Optional[str] = None


class GroupMembersUpdate(ApiModel):
    group_members: List[GroupMemberIn]


class ManualPaymentIn(ApiModel):
    upi_transaction_id: Optional[str] = None
    payment_screenshot: Optional[str] = None


class GatewayVerifyIn(BaseModel):
    # field names as the hosted checkout hands them back
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class ReviewIn(ApiModel):
    action: str  # 'approve' | 'reject'
    reason: Optional[str] = None
    admin_notes: Optional[str] = None


class PaymentStatusIn(ApiModel):
    payment_status: str


class ScanIn(ApiModel):
    qr_data: str
    event_day: Any


class ConfirmEntryIn(ApiModel):
    ticket_number: str
    event_day: Any
    group_member_id: Optional[str] = None


class EligibilityIn(ApiModel):
    identifier: str


class OtpIn(ApiModel):
    email: str
    otp: str


class FriendRegistrationIn(ApiModel):
    referrer_email: str
    name: str
    email: str
    phone: str
    college: str
    year: str
    payment_method: Optional[str] = None


class LoginIn(ApiModel):
    username: str
    password: str


class SettingIn(ApiModel):
    value: Any


class MockEmitIn(ApiModel):
    t: str = "captured"  # 'captured' | 'failed'


class BulkNotificationIn(ApiModel):
    subject: str
    message: str
    target_group: str = "all"
