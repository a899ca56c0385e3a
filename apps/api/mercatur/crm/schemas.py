from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Literal
from uuid import UUID

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)


LifecycleStage = Literal["lead", "prospect", "customer", "active", "former"]
CustomerStatus = Literal["active", "inactive", "potential", "lost"]
DealStage = Literal["lead", "qualified", "proposal", "negotiation", "won", "lost"]
CommunicationType = Literal["meeting", "email", "phone", "other"]

CompanyName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
PersonName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
Subject = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
OrgNumber = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\d{9}$")]
CurrencyCode = Annotated[str, StringConstraints(strip_whitespace=True, to_upper=True, pattern=r"^[A-Za-z]{3}$")]
Phone = Annotated[str, StringConstraints(strip_whitespace=True, max_length=20)]
ShortText = Annotated[str, StringConstraints(strip_whitespace=True, max_length=100)]
Label = Annotated[str, StringConstraints(strip_whitespace=True, max_length=255)]
Address = Annotated[str, StringConstraints(strip_whitespace=True, max_length=500)]
Notes = Annotated[str, StringConstraints(max_length=2000)]
Description = Annotated[str, StringConstraints(max_length=5000)]


_url_adapter = TypeAdapter(AnyHttpUrl)


def _normalize_url(value: Any, max_length: int = 255) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValueError(f"must be at most {max_length} characters")
    try:
        _url_adapter.validate_python(text)
    except ValidationError as exc:
        raise ValueError("must be a valid URL") from exc
    return text


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PatchModel(BaseModel):
    """Partial update: only fields that were sent are applied."""

    model_config = ConfigDict(extra="ignore")

    required_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_null_required(self) -> "PatchModel":
        for name in self.required_fields & self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be empty")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CustomerCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    company_name: CompanyName
    org_number: OrgNumber | None = None
    industry: ShortText | None = None
    website: str | None = None
    address: Address | None = None
    notes: Notes | None = None
    lifecycle_stage: LifecycleStage | None = None
    customer_status: CustomerStatus | None = None
    lead_source: Label | None = None
    annual_revenue: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    next_contact_date: date | None = None
    assigned_to: UUID | None = None

    @field_validator("website", mode="before")
    @classmethod
    def _validate_website(cls, value: Any) -> str | None:
        return _normalize_url(value)

    @field_validator("org_number", mode="before")
    @classmethod
    def _blank_org_number(cls, value: Any) -> Any:
        return None if isinstance(value, str) and not value.strip() else value


class CustomerUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"company_name"})

    company_name: CompanyName | None = None
    org_number: OrgNumber | None = None
    industry: ShortText | None = None
    website: str | None = None
    address: Address | None = None
    notes: Notes | None = None
    lifecycle_stage: LifecycleStage | None = None
    customer_status: CustomerStatus | None = None
    lead_source: Label | None = None
    annual_revenue: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    next_contact_date: date | None = None
    assigned_to: UUID | None = None

    @field_validator("website", mode="before")
    @classmethod
    def _validate_website(cls, value: Any) -> str | None:
        return _normalize_url(value)

    @field_validator("org_number", mode="before")
    @classmethod
    def _blank_org_number(cls, value: Any) -> Any:
        return None if isinstance(value, str) and not value.strip() else value


class ContactCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: UUID
    full_name: PersonName
    email: EmailStr | None = None
    phone: Phone | None = None
    job_title: ShortText | None = None
    department: ShortText | None = None
    linkedin_url: str | None = None
    is_decision_maker: bool = False
    is_primary: bool = False
    notes: Notes | None = None

    @field_validator("linkedin_url", mode="before")
    @classmethod
    def _validate_linkedin(cls, value: Any) -> str | None:
        return _normalize_url(value)

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, value: Any) -> Any:
        return None if isinstance(value, str) and not value.strip() else value


class ContactUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"full_name", "is_decision_maker", "is_primary"})

    full_name: PersonName | None = None
    email: EmailStr | None = None
    phone: Phone | None = None
    job_title: ShortText | None = None
    department: ShortText | None = None
    linkedin_url: str | None = None
    is_decision_maker: bool | None = None
    is_primary: bool | None = None
    notes: Notes | None = None

    @field_validator("linkedin_url", mode="before")
    @classmethod
    def _validate_linkedin(cls, value: Any) -> str | None:
        return _normalize_url(value)

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, value: Any) -> Any:
        return None if isinstance(value, str) and not value.strip() else value


class DealCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: UUID
    contact_id: UUID | None = None
    deal_name: PersonName
    deal_value: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    currency: CurrencyCode = "NOK"
    stage: DealStage = "lead"
    probability: int = Field(default=0, ge=0, le=100)
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    lost_reason: Address | None = None
    notes: Notes | None = None
    assigned_to: UUID | None = None


class DealUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset(
        {"customer_id", "deal_name", "currency", "stage", "probability"}
    )

    customer_id: UUID | None = None
    contact_id: UUID | None = None
    deal_name: PersonName | None = None
    deal_value: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    currency: CurrencyCode | None = None
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    lost_reason: Address | None = None
    notes: Notes | None = None
    assigned_to: UUID | None = None


def _not_in_future(value: datetime | None) -> datetime | None:
    normalized = as_utc(value)
    if normalized is not None and normalized > datetime.now(timezone.utc):
        raise ValueError("communication date cannot be in the future")
    return normalized


class CommunicationCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: UUID
    contact_id: UUID | None = None
    communication_type: CommunicationType
    communication_date: datetime
    subject: Subject
    description: Description | None = None

    @field_validator("communication_date")
    @classmethod
    def _validate_date(cls, value: datetime) -> datetime:
        return _not_in_future(value)


class CommunicationUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset(
        {"customer_id", "communication_type", "communication_date", "subject"}
    )

    customer_id: UUID | None = None
    contact_id: UUID | None = None
    communication_type: CommunicationType | None = None
    communication_date: datetime | None = None
    subject: Subject | None = None
    description: Description | None = None

    @field_validator("communication_date")
    @classmethod
    def _validate_date(cls, value: datetime | None) -> datetime | None:
        return _not_in_future(value)


class ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "updated_at", mode="after", check_fields=False)
    @classmethod
    def _timestamps_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class EntityRef(BaseModel):
    id: UUID


class CustomerRead(ReadModel):
    id: UUID
    company_name: str
    org_number: str | None
    industry: str | None
    website: str | None
    address: str | None
    notes: str | None
    lifecycle_stage: LifecycleStage | None
    customer_status: CustomerStatus | None
    lead_source: str | None
    annual_revenue: Decimal | None
    next_contact_date: date | None
    assigned_to: UUID | None
    created_by: UUID
    updated_by: UUID | None
    created_at: datetime
    updated_at: datetime


class CustomerWithStats(CustomerRead):
    contact_count: int = 0
    deal_count: int = 0
    communication_count: int = 0
    last_communication_date: datetime | None = None
    primary_contact_name: str | None = None

    @field_validator("last_communication_date", mode="after")
    @classmethod
    def _last_communication_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class CustomerPage(BaseModel):
    customers: list[CustomerWithStats]
    total: int
    page: int
    limit: int
    total_pages: int


class ContactRead(ReadModel):
    id: UUID
    customer_id: UUID
    full_name: str
    email: str | None
    phone: str | None
    job_title: str | None
    department: str | None
    linkedin_url: str | None
    is_decision_maker: bool
    is_primary: bool
    notes: str | None
    created_by: UUID
    updated_by: UUID | None
    created_at: datetime
    updated_at: datetime


class DealRead(ReadModel):
    id: UUID
    customer_id: UUID
    contact_id: UUID | None
    deal_name: str
    deal_value: Decimal | None
    currency: str
    stage: DealStage
    probability: int
    expected_close_date: date | None
    actual_close_date: date | None
    lost_reason: str | None
    notes: str | None
    assigned_to: UUID | None
    created_by: UUID
    updated_by: UUID | None
    created_at: datetime
    updated_at: datetime


class CommunicationRead(ReadModel):
    id: UUID
    customer_id: UUID
    contact_id: UUID | None
    communication_type: CommunicationType
    communication_date: datetime
    subject: str
    description: str | None
    logged_by: UUID
    created_at: datetime
    updated_at: datetime

    @field_validator("communication_date", mode="after")
    @classmethod
    def _communication_date_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


SearchResultType = Literal["customer", "contact", "communication", "deal"]


class SearchResult(BaseModel):
    type: SearchResultType
    id: UUID
    title: str
    description: str | None = None
    link: str
    metadata: str | None = None


class DashboardStats(BaseModel):
    total_customers: int
    total_contacts: int
    active_deals: int
    active_deal_value: Decimal
    recent_communications: int
    customers_this_month: int


class ActivityItem(BaseModel):
    type: Literal["customer", "communication", "deal"]
    id: UUID
    title: str
    description: str | None = None
    occurred_at: datetime
    link: str
