from __future__ import annotations

import re
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    HttpUrl,
    TypeAdapter,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError


_email_adapter = TypeAdapter(EmailStr)
_url_adapter = TypeAdapter(HttpUrl)
_SLUG_RE = re.compile(r"^[a-z0-9-]+$")
_HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

ACTIVITY_TYPES = ("call", "meeting", "email", "task", "whatsapp", "visit", "instagram", "linkedin")


def _min_chars(size: int, message: str, *, allow_none: bool = False) -> AfterValidator:
    def check(value: str | None) -> str | None:
        if value is None:
            if allow_none:
                return None
            raise ValueError(message)
        stripped = value.strip()
        if len(stripped) < size:
            raise ValueError(message)
        return stripped

    return AfterValidator(check)


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _check_email(value: str | None) -> str | None:
    value = _blank_to_none(value)
    if value is None:
        return None
    try:
        _email_adapter.validate_python(value)
    except PydanticValidationError:
        raise ValueError("Email inválido") from None
    return value


def _check_url(value: str | None) -> str | None:
    value = _blank_to_none(value)
    if value is None:
        return None
    try:
        _url_adapter.validate_python(value)
    except PydanticValidationError:
        raise ValueError("URL inválida") from None
    return value


def _bounded(
    message: str,
    *,
    minimum: Decimal | int | None = None,
    maximum: Decimal | int | None = None,
    exclusive_minimum: bool = False,
) -> AfterValidator:
    def check(value: Any) -> Any:
        if value is None:
            return None
        if minimum is not None:
            if value < minimum or (exclusive_minimum and value == minimum):
                raise ValueError(message)
        if maximum is not None and value > maximum:
            raise ValueError(message)
        return value

    return AfterValidator(check)


def _matches(pattern: re.Pattern[str], message: str) -> AfterValidator:
    def check(value: str | None) -> str | None:
        if value is None:
            return None
        if not pattern.match(value):
            raise ValueError(message)
        return value

    return AfterValidator(check)


OptionalText = Annotated[str | None, AfterValidator(_blank_to_none)]
OptionalEmail = Annotated[str | None, AfterValidator(_check_email)]
OptionalUrl = Annotated[str | None, AfterValidator(_check_url)]
PositiveCount = Annotated[int | None, _bounded("Deve ser maior que zero", minimum=0, exclusive_minimum=True)]
NonNegativeCount = Annotated[int | None, _bounded("Deve ser maior ou igual a zero", minimum=0)]


def _required(message: str) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError(message)
        return value

    return check


# Deals

DealStatus = Literal["open", "won", "lost"]
DealTitle = Annotated[str, _min_chars(2, "Título deve ter no mínimo 2 caracteres")]
DealValue = Annotated[Decimal, _bounded("Valor deve ser maior ou igual a zero", minimum=0)]


class DealCreate(BaseModel):
    title: DealTitle
    value: DealValue = Decimal("0")
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    status: DealStatus = "open"
    stage_id: UUID | None = Field(default=None, validate_default=True)
    contact_id: UUID | None = None
    organization_id: UUID | None = None
    expected_close_date: date | None = None

    @field_validator("stage_id")
    @classmethod
    def stage_is_required(cls, value: UUID | None) -> UUID:
        return _required("Estágio é obrigatório")(value)


class DealUpdate(BaseModel):
    title: Annotated[str | None, _min_chars(2, "Título deve ter no mínimo 2 caracteres")] = None
    value: Annotated[Decimal | None, _bounded("Valor deve ser maior ou igual a zero", minimum=0)] = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    status: DealStatus | None = None
    stage_id: UUID | None = None
    contact_id: UUID | None = None
    organization_id: UUID | None = None
    expected_close_date: date | None = None


class DealStageUpdate(BaseModel):
    stage_id: UUID


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    value: Decimal
    currency: str
    status: str
    stage_id: UUID
    contact_id: UUID | None
    organization_id: UUID | None
    expected_close_date: date | None
    owner_id: str
    created_at: datetime
    updated_at: datetime


# Contacts

ContactStatus = Literal["active", "inactive", "bounced"]
CompanyType = Literal["organization", "lead", "partner"]
PersonName = Annotated[str, _min_chars(2, "Nome deve ter no mínimo 2 caracteres")]
OptionalPersonName = Annotated[str | None, _min_chars(2, "Nome deve ter no mínimo 2 caracteres")]


class ContactCreate(BaseModel):
    name: PersonName
    email: OptionalEmail = None
    phone: OptionalText = None
    whatsapp: OptionalText = None
    role: OptionalText = None
    department: OptionalText = None
    linkedin: OptionalText = None
    status: ContactStatus = "active"
    is_primary: bool = False
    birth_date: date | None = None
    notes: OptionalText = None
    preferred_language: str = "pt-BR"
    source: OptionalText = None
    company_type: CompanyType | None = None
    company_id: UUID | None = None


class ContactUpdate(BaseModel):
    name: OptionalPersonName = None
    email: OptionalEmail = None
    phone: OptionalText = None
    whatsapp: OptionalText = None
    role: OptionalText = None
    department: OptionalText = None
    linkedin: OptionalText = None
    status: ContactStatus | None = None
    is_primary: bool | None = None
    birth_date: date | None = None
    notes: OptionalText = None
    preferred_language: str | None = None
    source: OptionalText = None
    company_type: CompanyType | None = None
    company_id: UUID | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    whatsapp: str | None
    role: str | None
    department: str | None
    linkedin: str | None
    status: str
    is_primary: bool
    birth_date: date | None
    notes: str | None
    preferred_language: str
    source: str | None
    organization_id: UUID | None
    lead_id: UUID | None
    partner_id: UUID | None
    owner_id: str
    created_at: datetime
    updated_at: datetime


# Organizations

OrganizationName = Annotated[str, _min_chars(2, "Nome Fantasia deve ter no mínimo 2 caracteres")]
EmployeeCount = Annotated[
    int | None,
    _bounded("Número de funcionários deve ser maior que zero", minimum=0, exclusive_minimum=True),
]
AnnualRevenue = Annotated[
    Decimal | None,
    _bounded("Faturamento anual deve ser maior que zero", minimum=0, exclusive_minimum=True),
]


class _OrganizationFields(BaseModel):
    legal_name: OptionalText = None
    foundation_date: date | None = None
    website: OptionalUrl = None
    phone: OptionalText = None
    whatsapp: OptionalText = None
    email: OptionalEmail = None
    country: OptionalText = None
    state: OptionalText = None
    city: OptionalText = None
    zip_code: OptionalText = None
    street_address: OptionalText = None
    industry: OptionalText = None
    employee_count: EmployeeCount = None
    annual_revenue: AnnualRevenue = None
    tax_id: OptionalText = None
    description: OptionalText = None
    company_owner: OptionalText = None
    company_size: OptionalText = None
    linkedin: OptionalText = None
    instagram: OptionalText = None
    label_id: UUID | None = None


class OrganizationCreate(_OrganizationFields):
    name: OrganizationName


class OrganizationUpdate(_OrganizationFields):
    name: Annotated[str | None, _min_chars(2, "Nome Fantasia deve ter no mínimo 2 caracteres")] = None


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    legal_name: str | None
    foundation_date: date | None
    website: str | None
    phone: str | None
    whatsapp: str | None
    email: str | None
    country: str | None
    state: str | None
    city: str | None
    zip_code: str | None
    street_address: str | None
    industry: str | None
    employee_count: int | None
    annual_revenue: Decimal | None
    tax_id: str | None
    description: str | None
    company_owner: str | None
    company_size: str | None
    linkedin: str | None
    instagram: str | None
    label_id: UUID | None
    source_lead_id: UUID | None
    owner_id: str
    created_at: datetime
    updated_at: datetime


# Partners

PartnerName = Annotated[str, _min_chars(2, "Nome da empresa deve ter no mínimo 2 caracteres")]


class _PartnerFields(BaseModel):
    legal_name: OptionalText = None
    foundation_date: date | None = None
    website: OptionalUrl = None
    email: OptionalEmail = None
    phone: OptionalText = None
    whatsapp: OptionalText = None
    country: OptionalText = None
    state: OptionalText = None
    city: OptionalText = None
    linkedin: OptionalText = None
    industry: OptionalText = None
    employee_count: PositiveCount = None
    description: OptionalText = None
    expertise: OptionalText = None
    notes: OptionalText = None


class PartnerCreate(_PartnerFields):
    name: PartnerName
    partner_type: str | None = Field(default=None, validate_default=True)

    @field_validator("partner_type")
    @classmethod
    def partner_type_is_required(cls, value: str | None) -> str:
        return _required("Tipo de parceria é obrigatório")(value).strip()


class PartnerUpdate(_PartnerFields):
    name: Annotated[str | None, _min_chars(2, "Nome da empresa deve ter no mínimo 2 caracteres")] = None
    partner_type: Annotated[str | None, _min_chars(1, "Tipo de parceria é obrigatório")] = None


class PartnerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    legal_name: str | None
    foundation_date: date | None
    partner_type: str
    website: str | None
    email: str | None
    phone: str | None
    whatsapp: str | None
    country: str | None
    state: str | None
    city: str | None
    linkedin: str | None
    industry: str | None
    employee_count: int | None
    description: str | None
    expertise: str | None
    notes: str | None
    last_contact_date: datetime | None
    owner_id: str
    created_at: datetime
    updated_at: datetime


# Leads

LeadQuality = Literal["cold", "warm", "hot"]
LeadStatus = Literal["new", "contacted", "qualified", "disqualified"]
LeadBusinessName = Annotated[str, _min_chars(2, "Nome comercial deve ter no mínimo 2 caracteres")]


class _LeadFields(BaseModel):
    registered_name: OptionalText = None
    company_registration_id: OptionalText = None
    email: OptionalEmail = None
    phone: OptionalText = None
    whatsapp: OptionalText = None
    website: OptionalUrl = None
    address: OptionalText = None
    city: OptionalText = None
    state: OptionalText = None
    country: OptionalText = None
    zip_code: OptionalText = None
    instagram: OptionalText = None
    linkedin: OptionalText = None
    description: OptionalText = None
    primary_activity: OptionalText = None
    company_size: OptionalText = None
    employees_count: NonNegativeCount = None
    revenue: Annotated[Decimal | None, _bounded("Faturamento deve ser maior ou igual a zero", minimum=0)] = None
    rating: Annotated[Decimal | None, _bounded("Avaliação deve ser entre 0 e 5", minimum=0, maximum=5)] = None
    source: OptionalText = None
    quality: LeadQuality | None = None


class LeadCreate(_LeadFields):
    business_name: LeadBusinessName
    status: LeadStatus = "new"


class LeadUpdate(_LeadFields):
    business_name: Annotated[str | None, _min_chars(2, "Nome comercial deve ter no mínimo 2 caracteres")] = None
    status: LeadStatus | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    business_name: str
    registered_name: str | None
    company_registration_id: str | None
    email: str | None
    phone: str | None
    whatsapp: str | None
    website: str | None
    address: str | None
    city: str | None
    state: str | None
    country: str | None
    zip_code: str | None
    instagram: str | None
    linkedin: str | None
    description: str | None
    primary_activity: str | None
    company_size: str | None
    employees_count: int | None
    revenue: Decimal | None
    rating: Decimal | None
    source: str | None
    quality: str | None
    status: str
    converted_at: datetime | None
    converted_organization_id: UUID | None
    owner_id: str
    created_at: datetime
    updated_at: datetime


class LeadContactCreate(BaseModel):
    name: PersonName
    role: OptionalText = None
    email: OptionalEmail = None
    phone: OptionalText = None
    whatsapp: OptionalText = None
    is_primary: bool = False


class LeadContactUpdate(BaseModel):
    name: OptionalPersonName = None
    role: OptionalText = None
    email: OptionalEmail = None
    phone: OptionalText = None
    whatsapp: OptionalText = None
    is_primary: bool | None = None


class LeadContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    name: str
    role: str | None
    email: str | None
    phone: str | None
    whatsapp: str | None
    is_primary: bool
    converted_to_contact_id: UUID | None
    created_at: datetime
    updated_at: datetime


class LeadConversionRead(BaseModel):
    lead: LeadRead
    organization: OrganizationRead
    contacts: list[ContactRead]


class LeadLabelsUpdate(BaseModel):
    label_ids: list[UUID]


# Activities

ActivitySubject = Annotated[str, _min_chars(2, "Assunto deve ter no mínimo 2 caracteres")]


def _check_activity_type(value: str | None) -> str | None:
    if value is None:
        return None
    if value not in ACTIVITY_TYPES:
        raise ValueError("Tipo de atividade inválido")
    return value


ActivityType = Annotated[str, AfterValidator(_check_activity_type)]


class ActivityCreate(BaseModel):
    type: ActivityType
    subject: ActivitySubject
    description: OptionalText = None
    due_date: datetime | None = None
    completed: bool = False
    deal_id: UUID | None = None
    contact_id: UUID | None = None
    contact_ids: list[UUID] | None = None
    lead_id: UUID | None = None
    partner_id: UUID | None = None


class ActivityUpdate(BaseModel):
    type: Annotated[str | None, AfterValidator(_check_activity_type)] = None
    subject: Annotated[str | None, _min_chars(2, "Assunto deve ter no mínimo 2 caracteres")] = None
    description: OptionalText = None
    due_date: datetime | None = None
    completed: bool | None = None
    deal_id: UUID | None = None
    contact_id: UUID | None = None
    contact_ids: list[UUID] | None = None
    lead_id: UUID | None = None
    partner_id: UUID | None = None


class ActivityDueDateUpdate(BaseModel):
    due_date: datetime | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    subject: str
    description: str | None
    due_date: datetime | None
    completed: bool
    deal_id: UUID | None
    contact_id: UUID | None
    contact_ids: list[str] | None
    lead_id: UUID | None
    partner_id: UUID | None
    owner_id: str
    created_at: datetime
    updated_at: datetime


# ICPs

ICPStatus = Literal["draft", "active", "archived"]
ICPName = Annotated[str, _min_chars(2, "Nome deve ter pelo menos 2 caracteres")]
ICPSlug = Annotated[
    str,
    _min_chars(2, "Slug deve ter pelo menos 2 caracteres"),
    _matches(_SLUG_RE, "Slug deve conter apenas letras minúsculas, números e hífens"),
]
ICPContent = Annotated[str, _min_chars(1, "Conteúdo é obrigatório")]


class ICPCreate(BaseModel):
    name: ICPName = Field(max_length=100)
    slug: ICPSlug = Field(max_length=50)
    content: ICPContent = Field(max_length=10000)
    status: ICPStatus = "draft"


class ICPUpdate(BaseModel):
    name: Annotated[str | None, _min_chars(2, "Nome deve ter pelo menos 2 caracteres")] = Field(
        default=None, max_length=100
    )
    slug: Annotated[
        str | None,
        _min_chars(2, "Slug deve ter pelo menos 2 caracteres"),
        _matches(_SLUG_RE, "Slug deve conter apenas letras minúsculas, números e hífens"),
    ] = Field(default=None, max_length=50)
    content: Annotated[str | None, _min_chars(1, "Conteúdo é obrigatório")] = Field(default=None, max_length=10000)
    status: ICPStatus | None = None


class ICPRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    content: str
    status: str
    owner_id: str
    created_at: datetime
    updated_at: datetime


# Reference catalog

CatalogName = Annotated[str, _min_chars(2, "Nome deve ter no mínimo 2 caracteres")]
OptionalCatalogName = Annotated[str | None, _min_chars(2, "Nome deve ter no mínimo 2 caracteres")]
Probability = Annotated[int, _bounded("Probabilidade deve ser entre 0 e 100", minimum=0, maximum=100)]
StageOrder = Annotated[int, _bounded("Ordem deve ser maior ou igual a 0", minimum=0)]


class PipelineCreate(BaseModel):
    name: CatalogName
    is_default: bool = False


class PipelineUpdate(BaseModel):
    name: OptionalCatalogName = None
    is_default: bool | None = None


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_default: bool
    created_at: datetime
    updated_at: datetime


class StageCreate(BaseModel):
    name: CatalogName
    order: StageOrder = 0
    probability: Probability = 0
    pipeline_id: UUID


class StageUpdate(BaseModel):
    name: OptionalCatalogName = None
    order: Annotated[int | None, _bounded("Ordem deve ser maior ou igual a 0", minimum=0)] = None
    probability: Annotated[int | None, _bounded("Probabilidade deve ser entre 0 e 100", minimum=0, maximum=100)] = None


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    order: int
    probability: int
    created_at: datetime
    updated_at: datetime


class BusinessLineCreate(BaseModel):
    name: CatalogName
    description: OptionalText = None
    is_active: bool = True


class BusinessLineUpdate(BaseModel):
    name: OptionalCatalogName = None
    description: OptionalText = None
    is_active: bool | None = None


class BusinessLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ProductCreate(BaseModel):
    name: CatalogName
    description: OptionalText = None
    base_price: Annotated[Decimal | None, _bounded("Preço deve ser maior ou igual a zero", minimum=0)] = None
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    is_active: bool = True
    business_line_id: UUID | None = None


class ProductUpdate(BaseModel):
    name: OptionalCatalogName = None
    description: OptionalText = None
    base_price: Annotated[Decimal | None, _bounded("Preço deve ser maior ou igual a zero", minimum=0)] = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    is_active: bool | None = None
    business_line_id: UUID | None = None


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    base_price: Decimal | None
    currency: str
    is_active: bool
    business_line_id: UUID | None
    created_at: datetime
    updated_at: datetime


HexColor = Annotated[str, _matches(_HEX_COLOR_RE, "Cor deve ser um hex válido (ex: #792990)")]


class LabelCreate(BaseModel):
    name: CatalogName
    color: HexColor = "#6b7280"


class LabelUpdate(BaseModel):
    name: OptionalCatalogName = None
    color: Annotated[str | None, _matches(_HEX_COLOR_RE, "Cor deve ser um hex válido (ex: #792990)")] = None


class LabelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str
    created_at: datetime
    updated_at: datetime


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    details: Any | None = None
    correlation_id: str | None = None
