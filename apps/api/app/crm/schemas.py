from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, get_args
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


LeadStatus = Literal["New", "Contacted", "Qualified", "Unqualified", "Lost", "Converted"]
LeadOpenStatus = Literal["New", "Contacted", "Qualified", "Unqualified", "Lost"]
LeadSource = Literal[
    "Website",
    "Referral",
    "Campaign",
    "Cold Call",
    "Trade Show",
    "Partner",
    "Social Media",
    "Bulk Upload",
    "Other",
]
LeadRating = Literal["Hot", "Warm", "Cold"]
AccountType = Literal["Customer", "Prospect", "Partner", "Vendor", "Competitor", "Other"]
OpportunityStage = Literal[
    "Prospecting",
    "Qualification",
    "Needs Analysis",
    "Value Proposition",
    "Proposal/Price Quote",
    "Negotiation/Review",
    "Closed Won",
    "Closed Lost",
]
OpportunityType = Literal["New Business", "Existing Business", "Renewal"]
PlanType = Literal["free", "basic", "premium", "enterprise"]
RelatedType = Literal["Lead", "Account", "Contact", "Opportunity"]

OPPORTUNITY_STAGES: tuple[str, ...] = get_args(OpportunityStage)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]
OptionalEmail = Annotated[EmailStr | None, BeforeValidator(_blank_to_none)]


class _PatchModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    row_version: int = Field(ge=1)


# Tenants


class TenantCreate(BaseModel):
    organization_name: str = Field(min_length=1)
    slug: str = Field(min_length=2, max_length=128, pattern=r"^[a-z0-9][a-z0-9-]*$")
    domain: str | None = None
    contact_email: EmailStr
    contact_phone: str | None = None
    plan_type: PlanType = "free"


class TenantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_name: str
    slug: str
    domain: str | None
    contact_email: str
    contact_phone: str | None
    plan_type: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


# Leads


class LeadCreate(BaseModel):
    tenant_id: UUID | None = None
    owner_user_id: str | None = None
    first_name: OptionalText = None
    last_name: OptionalText = None
    email: OptionalEmail = None
    phone: str | None = None
    job_title: str | None = None
    company: OptionalText = None
    industry: str | None = None
    website: str | None = None
    annual_revenue: float | None = Field(default=None, ge=0)
    number_of_employees: int | None = Field(default=None, ge=0)
    street: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    zip_code: str | None = None
    lead_source: LeadSource = "Other"
    status: LeadOpenStatus = "New"
    rating: LeadRating = "Warm"
    lead_score: int = Field(default=0, ge=0, le=100)
    description: str | None = None

    @model_validator(mode="after")
    def require_identity(self) -> "LeadCreate":
        if not any([self.first_name, self.last_name, self.email, self.company]):
            raise ValueError("Provide at least one of: first_name, last_name, email, company")
        return self


class LeadUpdate(_PatchModel):
    owner_user_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    job_title: str | None = None
    company: str | None = None
    industry: str | None = None
    website: str | None = None
    annual_revenue: float | None = Field(default=None, ge=0)
    number_of_employees: int | None = Field(default=None, ge=0)
    street: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    zip_code: str | None = None
    lead_source: LeadSource | None = None
    status: LeadOpenStatus | None = None
    rating: LeadRating | None = None
    lead_score: int | None = Field(default=None, ge=0, le=100)
    description: str | None = None


class ConvertedAccountSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_number: str
    name: str


class ConvertedContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None


class ConvertedOpportunitySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    stage: str
    amount: float


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    owner_user_id: str
    first_name: str | None
    last_name: str | None
    email: str | None
    phone: str | None
    job_title: str | None
    company: str | None
    industry: str | None
    website: str | None
    annual_revenue: float | None
    number_of_employees: int | None
    street: str | None
    city: str | None
    state: str | None
    country: str | None
    zip_code: str | None
    lead_source: str
    status: str
    rating: str
    lead_score: int
    description: str | None
    is_converted: bool
    converted_at: datetime | None
    converted_account_id: UUID | None
    converted_contact_id: UUID | None
    converted_opportunity_id: UUID | None
    created_by: str
    last_modified_by: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int
    converted_account: ConvertedAccountSummary | None = None
    converted_contact: ConvertedContactSummary | None = None
    converted_opportunity: ConvertedOpportunitySummary | None = None


# Accounts


class AccountCreate(BaseModel):
    tenant_id: UUID | None = None
    owner_user_id: str | None = None
    name: str = Field(min_length=1)
    account_type: AccountType = "Prospect"
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    email: OptionalEmail = None
    annual_revenue: float | None = Field(default=None, ge=0)
    number_of_employees: int | None = Field(default=None, ge=0)
    billing_street: str | None = None
    billing_city: str | None = None
    billing_state: str | None = None
    billing_country: str | None = None
    billing_zip_code: str | None = None
    shipping_street: str | None = None
    shipping_city: str | None = None
    shipping_state: str | None = None
    shipping_country: str | None = None
    shipping_zip_code: str | None = None
    description: str | None = None
    rating: LeadRating | None = None
    parent_account_id: UUID | None = None


class AccountUpdate(_PatchModel):
    owner_user_id: str | None = None
    name: str | None = Field(default=None, min_length=1)
    account_type: AccountType | None = None
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    email: EmailStr | None = None
    annual_revenue: float | None = Field(default=None, ge=0)
    number_of_employees: int | None = Field(default=None, ge=0)
    billing_street: str | None = None
    billing_city: str | None = None
    billing_state: str | None = None
    billing_country: str | None = None
    billing_zip_code: str | None = None
    shipping_street: str | None = None
    shipping_city: str | None = None
    shipping_state: str | None = None
    shipping_country: str | None = None
    shipping_zip_code: str | None = None
    description: str | None = None
    rating: LeadRating | None = None
    parent_account_id: UUID | None = None


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    account_number: str
    name: str
    account_type: str
    industry: str | None
    website: str | None
    phone: str | None
    email: str | None
    annual_revenue: float | None
    number_of_employees: int | None
    billing_street: str | None
    billing_city: str | None
    billing_state: str | None
    billing_country: str | None
    billing_zip_code: str | None
    shipping_street: str | None
    shipping_city: str | None
    shipping_state: str | None
    shipping_country: str | None
    shipping_zip_code: str | None
    description: str | None
    rating: str | None
    parent_account_id: UUID | None
    owner_user_id: str
    created_by: str
    last_modified_by: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


# Contacts


class ContactCreate(BaseModel):
    tenant_id: UUID | None = None
    owner_user_id: str | None = None
    account_id: UUID | None = None
    reports_to_id: UUID | None = None
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: OptionalEmail = None
    phone: str | None = None
    mobile_phone: str | None = None
    job_title: str | None = None
    department: str | None = None
    mailing_street: str | None = None
    mailing_city: str | None = None
    mailing_state: str | None = None
    mailing_country: str | None = None
    mailing_zip_code: str | None = None
    description: str | None = None
    is_primary: bool = False


class ContactUpdate(_PatchModel):
    owner_user_id: str | None = None
    account_id: UUID | None = None
    reports_to_id: UUID | None = None
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    mobile_phone: str | None = None
    job_title: str | None = None
    department: str | None = None
    mailing_street: str | None = None
    mailing_city: str | None = None
    mailing_state: str | None = None
    mailing_country: str | None = None
    mailing_zip_code: str | None = None
    description: str | None = None
    is_primary: bool | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    account_id: UUID | None
    reports_to_id: UUID | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    mobile_phone: str | None
    job_title: str | None
    department: str | None
    mailing_street: str | None
    mailing_city: str | None
    mailing_state: str | None
    mailing_country: str | None
    mailing_zip_code: str | None
    description: str | None
    is_primary: bool
    owner_user_id: str
    created_by: str
    last_modified_by: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class AccountDetailRead(AccountRead):
    related_contacts: list[ContactRead] = Field(default_factory=list)


# Opportunities


class OpportunityCreate(BaseModel):
    tenant_id: UUID | None = None
    owner_user_id: str | None = None
    account_id: UUID
    contact_id: UUID | None = None
    lead_id: UUID | None = None
    name: str = Field(min_length=1)
    stage: OpportunityStage = "Prospecting"
    probability: int = Field(default=10, ge=0, le=100)
    amount: float = Field(default=0, ge=0)
    close_date: date
    opportunity_type: OpportunityType | None = None
    lead_source: LeadSource | None = None
    next_step: str | None = None
    description: str | None = None


class OpportunityUpdate(_PatchModel):
    owner_user_id: str | None = None
    contact_id: UUID | None = None
    name: str | None = Field(default=None, min_length=1)
    stage: OpportunityStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    amount: float | None = Field(default=None, ge=0)
    close_date: date | None = None
    opportunity_type: OpportunityType | None = None
    lead_source: LeadSource | None = None
    next_step: str | None = None
    description: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    account_id: UUID
    contact_id: UUID | None
    lead_id: UUID | None
    name: str
    stage: str
    probability: int
    amount: float
    close_date: date
    opportunity_type: str | None
    lead_source: str | None
    next_step: str | None
    description: str | None
    owner_user_id: str
    created_by: str
    last_modified_by: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def weighted_amount(self) -> float:
        return round(self.amount * self.probability / 100, 2)


# Lead conversion


class _ConversionInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_strings_are_absent(cls, value: Any) -> Any:
        return _blank_to_none(value)


class AccountConversionData(_ConversionInput):
    name: str | None = Field(default=None, validation_alias=AliasChoices("name", "accountName", "account_name"))
    account_type: AccountType | None = None
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    email: EmailStr | None = None
    annual_revenue: float | None = Field(default=None, ge=0)
    number_of_employees: int | None = Field(default=None, ge=0)
    billing_street: str | None = Field(
        default=None, validation_alias=AliasChoices("billing_street", "billingStreet", "street")
    )
    billing_city: str | None = Field(default=None, validation_alias=AliasChoices("billing_city", "billingCity", "city"))
    billing_state: str | None = Field(
        default=None, validation_alias=AliasChoices("billing_state", "billingState", "state")
    )
    billing_country: str | None = Field(
        default=None, validation_alias=AliasChoices("billing_country", "billingCountry", "country")
    )
    billing_zip_code: str | None = Field(
        default=None, validation_alias=AliasChoices("billing_zip_code", "billingZipCode", "zipCode", "zip_code")
    )
    description: str | None = None
    rating: LeadRating | None = None


class ContactConversionData(_ConversionInput):
    account_id: UUID | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    mobile_phone: str | None = None
    job_title: str | None = None
    department: str | None = None
    mailing_street: str | None = Field(
        default=None, validation_alias=AliasChoices("mailing_street", "mailingStreet", "street")
    )
    mailing_city: str | None = Field(default=None, validation_alias=AliasChoices("mailing_city", "mailingCity", "city"))
    mailing_state: str | None = Field(
        default=None, validation_alias=AliasChoices("mailing_state", "mailingState", "state")
    )
    mailing_country: str | None = Field(
        default=None, validation_alias=AliasChoices("mailing_country", "mailingCountry", "country")
    )
    mailing_zip_code: str | None = Field(
        default=None, validation_alias=AliasChoices("mailing_zip_code", "mailingZipCode", "zipCode", "zip_code")
    )
    description: str | None = None


class OpportunityConversionData(_ConversionInput):
    name: str | None = Field(
        default=None, validation_alias=AliasChoices("name", "opportunityName", "opportunity_name")
    )
    account_id: UUID | None = None
    contact_id: UUID | None = None
    stage: OpportunityStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    amount: float | None = Field(default=None, ge=0)
    close_date: date | None = None
    opportunity_type: OpportunityType | None = Field(
        default=None, validation_alias=AliasChoices("opportunity_type", "opportunityType", "type")
    )
    lead_source: LeadSource | None = None
    next_step: str | None = None
    description: str | None = None


class LeadConvertRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    create_account: bool = False
    create_contact: bool = False
    create_opportunity: bool = False
    account_data: AccountConversionData = Field(default_factory=AccountConversionData)
    contact_data: ContactConversionData = Field(default_factory=ContactConversionData)
    opportunity_data: OpportunityConversionData = Field(default_factory=OpportunityConversionData)

    @field_validator("account_data", "contact_data", "opportunity_data", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class LeadConversionRead(BaseModel):
    lead: LeadRead
    account: AccountRead | None = None
    contact: ContactRead | None = None
    opportunity: OpportunityRead | None = None


# Notes


class _RelatedRef(BaseModel):
    id: UUID


class LeadRef(_RelatedRef):
    type: Literal["Lead"]


class AccountRef(_RelatedRef):
    type: Literal["Account"]


class ContactRef(_RelatedRef):
    type: Literal["Contact"]


class OpportunityRef(_RelatedRef):
    type: Literal["Opportunity"]


RelatedTo = Annotated[
    LeadRef | AccountRef | ContactRef | OpportunityRef,
    Field(discriminator="type"),
]


class NoteCreate(BaseModel):
    related_to: RelatedTo
    title: str | None = None
    content: str = Field(min_length=1)
    is_private: bool = False


class NoteRead(BaseModel):
    id: UUID
    tenant_id: UUID
    related_to: RelatedTo
    title: str | None
    content: str
    is_private: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


# Activity log


class ActivityLogRead(BaseModel):
    id: int
    tenant_id: UUID | None
    actor_user_id: str
    event_name: str
    entity_type: str
    entity_id: str | None
    metadata: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None
    created_at: datetime
