from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.core.actor import ActorUser, get_current_user
from app.core.database import get_db
from app.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DashboardMetrics,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    NoteUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    OpportunityWithRelations,
    StageChangeLogRead,
    StageTransitionRequest,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.crm.service import (
    account_service,
    activity_service,
    contact_service,
    dashboard_service,
    lead_service,
    note_service,
    opportunity_service,
    user_service,
)

users_router = APIRouter(prefix="/api/users", tags=["crm.users"])
accounts_router = APIRouter(prefix="/api/accounts", tags=["crm.accounts"])
contacts_router = APIRouter(prefix="/api/contacts", tags=["crm.contacts"])
leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["crm.opportunities"])
activities_router = APIRouter(prefix="/api/activities", tags=["crm.activities"])
notes_router = APIRouter(prefix="/api/notes", tags=["crm.notes"])
dashboard_router = APIRouter(prefix="/api/dashboard", tags=["crm.dashboard"])


@users_router.get("", response_model=list[UserRead])
def list_users(db: Session = Depends(get_db)) -> list[UserRead]:
    return user_service.list_users(db)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead:
    return user_service.create_user(db, user, dto)


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(user_id: int, db: Session = Depends(get_db)) -> UserRead:
    return user_service.get_user(db, user_id)


@users_router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: int,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead:
    return user_service.update_user(db, user, user_id, dto)


@accounts_router.get("", response_model=list[AccountRead])
def list_accounts(db: Session = Depends(get_db)) -> list[AccountRead]:
    return account_service.list_accounts(db)


@accounts_router.post("", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    dto: AccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead:
    return account_service.create_account(db, user, dto)


@accounts_router.get("/{account_id}", response_model=AccountRead)
def get_account(account_id: int, db: Session = Depends(get_db)) -> AccountRead:
    return account_service.get_account(db, account_id)


@accounts_router.patch("/{account_id}", response_model=AccountRead)
def update_account(
    account_id: int,
    dto: AccountUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead:
    return account_service.update_account(db, user, account_id, dto)


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(
    account_id: int | None = Query(default=None, alias="accountId"),
    db: Session = Depends(get_db),
) -> list[ContactRead]:
    return contact_service.list_contacts(db, account_id=account_id)


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead:
    return contact_service.create_contact(db, user, dto)


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(contact_id: int, db: Session = Depends(get_db)) -> ContactRead:
    return contact_service.get_contact(db, contact_id)


@contacts_router.patch("/{contact_id}", response_model=ContactRead)
def update_contact(
    contact_id: int,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead:
    return contact_service.update_contact(db, user, contact_id, dto)


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
) -> list[LeadRead]:
    return lead_service.list_leads(db, status=status_filter)


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead:
    return lead_service.create_lead(db, user, dto)


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(lead_id: int, db: Session = Depends(get_db)) -> LeadRead:
    return lead_service.get_lead(db, lead_id)


@leads_router.patch("/{lead_id}", response_model=LeadRead)
def update_lead(
    lead_id: int,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead:
    return lead_service.update_lead(db, user, lead_id, dto)


@leads_router.post("/{lead_id}/convert", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def convert_lead(
    lead_id: int,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead:
    return lead_service.convert_lead(db, user, lead_id, dto)


@opportunities_router.get("", response_model=list[OpportunityRead])
def list_opportunities(
    stage: str | None = Query(default=None),
    account_id: int | None = Query(default=None, alias="accountId"),
    lead_id: int | None = Query(default=None, alias="leadId"),
    db: Session = Depends(get_db),
) -> list[OpportunityRead]:
    return opportunity_service.list_opportunities(db, stage=stage, account_id=account_id, lead_id=lead_id)


@opportunities_router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead:
    return opportunity_service.create_opportunity(db, user, dto)


@opportunities_router.get("/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(opportunity_id: int, db: Session = Depends(get_db)) -> OpportunityRead:
    return opportunity_service.get_opportunity(db, opportunity_id)


@opportunities_router.get("/{opportunity_id}/with-relations", response_model=OpportunityWithRelations)
def get_opportunity_with_relations(opportunity_id: int, db: Session = Depends(get_db)) -> OpportunityWithRelations:
    return opportunity_service.get_with_relations(db, opportunity_id)


@opportunities_router.patch("/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    opportunity_id: int,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead:
    return opportunity_service.update_opportunity(db, user, opportunity_id, dto)


@opportunities_router.post("/{opportunity_id}/stage", response_model=OpportunityRead)
def transition_stage(
    opportunity_id: int,
    dto: StageTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead:
    return opportunity_service.transition_stage(db, user, opportunity_id, dto)


@opportunities_router.get("/{opportunity_id}/stage-logs", response_model=list[StageChangeLogRead])
def list_stage_logs(opportunity_id: int, db: Session = Depends(get_db)) -> list[StageChangeLogRead]:
    return opportunity_service.list_stage_logs(db, opportunity_id)


@activities_router.get("", response_model=list[ActivityRead])
def list_activities(
    opportunity_id: int | None = Query(default=None, alias="opportunityId"),
    lead_id: int | None = Query(default=None, alias="leadId"),
    account_id: int | None = Query(default=None, alias="accountId"),
    contact_id: int | None = Query(default=None, alias="contactId"),
    db: Session = Depends(get_db),
) -> list[ActivityRead]:
    return activity_service.list_activities(
        db,
        opportunity_id=opportunity_id,
        lead_id=lead_id,
        account_id=account_id,
        contact_id=contact_id,
    )


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead:
    return activity_service.create_activity(db, user, dto)


@activities_router.patch("/{activity_id}", response_model=ActivityRead)
def update_activity(
    activity_id: int,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead:
    return activity_service.update_activity(db, user, activity_id, dto)


@notes_router.get("", response_model=list[NoteRead])
def list_notes(
    lead_id: int | None = Query(default=None, alias="leadId"),
    opportunity_id: int | None = Query(default=None, alias="opportunityId"),
    account_id: int | None = Query(default=None, alias="accountId"),
    contact_id: int | None = Query(default=None, alias="contactId"),
    db: Session = Depends(get_db),
) -> list[NoteRead]:
    return note_service.list_notes(
        db,
        lead_id=lead_id,
        opportunity_id=opportunity_id,
        account_id=account_id,
        contact_id=contact_id,
    )


@notes_router.post("", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def create_note(
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead:
    return note_service.create_note(db, user, dto)


@notes_router.patch("/{note_id}", response_model=NoteRead)
def update_note(
    note_id: int,
    dto: NoteUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead:
    return note_service.update_note(db, user, note_id, dto)


@notes_router.delete("/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_note(
    note_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    note_service.delete_note(db, user, note_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@dashboard_router.get("/metrics", response_model=DashboardMetrics)
def dashboard_metrics(db: Session = Depends(get_db)) -> DashboardMetrics:
    return dashboard_service.get_metrics(db)
