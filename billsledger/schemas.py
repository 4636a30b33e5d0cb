from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field

from billsledger.models import BillStatus, MemberRole, MessageType, TransactionStatus, TransactionType


class RegisterReq(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=30)
    full_name: str = Field(min_length=1, max_length=120)
    password: str = Field(min_length=6)
    phone_number: str | None = Field(default=None, max_length=20)


class LoginReq(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UpdateProfileReq(BaseModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=120)
    phone_number: str | None = Field(default=None, max_length=20)
    bio: str | None = Field(default=None, max_length=500)
    avatar: str | None = Field(default=None, max_length=500)


class ParticipantShare(BaseModel):
    user_id: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)


class CreateBillReq(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    total_amount: Decimal = Field(ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    due_date: datetime | None = None
    conversation_id: str | None = None
    participants: list[ParticipantShare] = Field(min_length=1)


class UpdateBillStatusReq(BaseModel):
    status: BillStatus


class PayBillReq(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)


class CreateTransactionReq(BaseModel):
    receiver_id: str = Field(min_length=1)
    amount: Decimal = Field(ge=Decimal("0.01"))
    description: str | None = Field(default=None, max_length=500)
    bill_id: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class TransactionFilter(BaseModel):
    type: TransactionType | None = None
    status: TransactionStatus | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class DirectConversationReq(BaseModel):
    participant_id: str = Field(min_length=1)


class GroupConversationReq(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    participant_ids: list[str] = Field(min_length=2)


class AddParticipantReq(BaseModel):
    user_id: str = Field(min_length=1)


class SendMessageReq(BaseModel):
    conversation_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    type: MessageType = MessageType.TEXT
    attachments: list[str] = Field(default_factory=list)


class FriendRequestReq(BaseModel):
    receiver_id: str = Field(min_length=1)


class CreateOrganizationReq(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    avatar: str | None = Field(default=None, max_length=500)


class UpdateOrganizationReq(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    avatar: str | None = Field(default=None, max_length=500)


class AddMemberReq(BaseModel):
    user_id: str = Field(min_length=1)
    role: MemberRole = MemberRole.MEMBER


class UpdateMemberRoleReq(BaseModel):
    role: MemberRole
