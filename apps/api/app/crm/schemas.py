from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import EmailStr, Field, model_validator

from app.business.revenue.financials import weighted_value_for
from app.business.revenue.schemas import OrderWithItems
from app.core.schemas import CamelModel
from app.crm.stages import Stage


LeadStatus = Literal["new", "contacted", "qualified", "converted", "lost"]
ActivityType = Literal["call", "email", "meeting", "note", "task", "stage_change"]
UserRole = Literal["admin", "manager", "sales"]


class UserCreate(CamelModel):
    username: str = Field(min_length=1, max_length=128)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    role: UserRole = "sales"
    is_active: bool = True


class UserUpdate(CamelModel):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    role: UserRole | None = None
    is_active: bool | None = None


class UserRead(CamelModel):
    id: int
    username: str
    first_name: str
    last_name: str
    email: str
    role: str
    is_active: bool
    created_at: datetime


class AccountCreate(CamelModel):
    company_name: str = Field(min_length=1)
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    address: str | None = None


class AccountUpdate(CamelModel):
    company_name: str | None = Field(default=None, min_length=1)
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    address: str | None = None


class AccountRead(CamelModel):
    id: int
    company_name: str
    industry: str | None
    website: str | None
    phone: str | None
    address: str | None
    created_at: datetime


class ContactCreate(CamelModel):
    account_id: int | None = None
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    phone: str | None = None
    title: str | None = None


class ContactUpdate(CamelModel):
    account_id: int | None = None
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    title: str | None = None


class ContactRead(CamelModel):
    id: int
    account_id: int | None
    first_name: str
    last_name: str
    email: str
    phone: str | None
    title: str | None
    created_at: datetime


class LeadCreate(CamelModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    source: str | None = None
    status: LeadStatus = "new"
    owner_id: int | None = None


class LeadUpdate(CamelModel):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    source: str | None = None
    status: LeadStatus | None = None
    owner_id: int | None = None


class LeadRead(CamelModel):
    id: int
    first_name: str
    last_name: str
    email: str
    phone: str | None
    company: str | None
    title: str | None
    source: str | None
    status: str
    owner_id: int | None
    created_at: datetime


class LeadConvertRequest(CamelModel):
    name: str
    value: Decimal | None = None
    stage: Stage = "prospecting"
    probability: int | None = None
    close_date: date | None = None
    description: str | None = None
    owner_id: int | None = None
    account_id: int | None = None
    contact_id: int | None = None
    create_contact: bool = True


class OpportunityCreate(CamelModel):
    name: str = Field(min_length=1)
    account_id: int | None = None
    contact_id: int | None = None
    lead_id: int | None = None
    owner_id: int | None = None
    stage: Stage = "prospecting"
    probability: int = 0
    value: Decimal | None = None
    gross_profit: Decimal | None = None
    close_date: date | None = None
    lead_source: str | None = None
    description: str | None = None


class OpportunityUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    account_id: int | None = None
    contact_id: int | None = None
    owner_id: int | None = None
    stage: Stage | None = None
    reason: str | None = None
    changed_by: int | None = None
    probability: int | None = None
    value: Decimal | None = None
    gross_profit: Decimal | None = None
    close_date: date | None = None
    lead_source: str | None = None
    description: str | None = None
    row_version: int | None = None


class OpportunityRead(CamelModel):
    id: int
    account_id: int | None
    contact_id: int | None
    lead_id: int | None
    owner_id: int | None
    name: str
    stage: str
    probability: int
    value: Decimal
    gross_profit: Decimal
    gross_profit_margin: int
    weighted_value: Decimal = Decimal("0.00")
    close_date: date | None
    lead_source: str | None
    description: str | None
    row_version: int
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _derive_weighted_value(self) -> "OpportunityRead":
        self.weighted_value = weighted_value_for(self.value, self.probability)
        return self


class StageTransitionRequest(CamelModel):
    stage: str
    reason: str | None = None
    changed_by: int | None = None


class StageChangeLogRead(CamelModel):
    id: int
    opportunity_id: int
    from_stage: str | None
    to_stage: str
    changed_by: int | None
    reason: str
    created_at: datetime


class StageChangeLogWithUser(StageChangeLogRead):
    user: UserRead | None = None


class ActivityCreate(CamelModel):
    account_id: int | None = None
    contact_id: int | None = None
    lead_id: int | None = None
    opportunity_id: int | None = None
    type: ActivityType
    subject: str = Field(min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    completed: bool = False
    created_by: int | None = None


class ActivityUpdate(CamelModel):
    subject: str | None = Field(default=None, min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    completed: bool | None = None


class ActivityRead(CamelModel):
    id: int
    account_id: int | None
    contact_id: int | None
    lead_id: int | None
    opportunity_id: int | None
    type: str
    subject: str
    description: str | None
    due_date: datetime | None
    completed: bool
    created_by: int | None
    created_at: datetime


class NoteCreate(CamelModel):
    content: str = Field(min_length=1)
    account_id: int | None = None
    contact_id: int | None = None
    lead_id: int | None = None
    opportunity_id: int | None = None
    created_by: int | None = None


class NoteUpdate(CamelModel):
    content: str = Field(min_length=1)


class NoteRead(CamelModel):
    id: int
    content: str
    account_id: int | None
    contact_id: int | None
    lead_id: int | None
    opportunity_id: int | None
    created_by: int | None
    created_at: datetime
    updated_at: datetime


class OpportunityWithRelations(OpportunityRead):
    account: AccountRead | None = None
    contact: ContactRead | None = None
    owner: UserRead | None = None
    orders: list[OrderWithItems] = Field(default_factory=list)
    stage_logs: list[StageChangeLogWithUser] = Field(default_factory=list)
    activities: list[ActivityRead] = Field(default_factory=list)


class DashboardMetrics(CamelModel):
    total_accounts: int
    total_contacts: int
    total_leads: int
    active_opportunities: int
    revenue: Decimal
    conversion_rate: float
    pipeline_value: Decimal
    weighted_pipeline_value: Decimal
    account_growth: float
    lead_growth: float
    opportunity_growth: float
    revenue_growth: float
