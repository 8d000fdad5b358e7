from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.business.revenue.financials import margin_for, weighted_value_for
from app.business.revenue.models import RevenueOrder, RevenueOrderItem
from app.business.revenue.pricing import quantize_money
from app.business.revenue.schemas import OrderWithItems
from app.core.actor import ActorUser
from app.core.transactions import atomic
from app.crm.errors import ConflictError, NotFoundError, ValidationError
from app.crm.models import (
    CRMAccount,
    CRMActivity,
    CRMContact,
    CRMLead,
    CRMNote,
    CRMOpportunity,
    CRMStageChangeLog,
    CRMUser,
)
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
    StageChangeLogWithUser,
    StageTransitionRequest,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.crm.stages import (
    CLOSED_LOST,
    CLOSED_WON,
    TERMINAL_STAGES,
    ensure_open,
    stage_change_subject,
    validate_stage,
    validate_transition,
)
from app.metrics import observe_lead_conversion, observe_stage_transition


logger = logging.getLogger("app.crm")
tracer = trace.get_tracer("app.crm")

GROWTH_WINDOW = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_probability(probability: int | None) -> None:
    if probability is None:
        return
    if probability < 0 or probability > 100:
        raise ValidationError("probability", "probability must be between 0 and 100")


def _require(session: Session, model: type[Any], entity_id: int | None, entity: str) -> Any:
    if entity_id is None:
        return None
    row = session.get(model, entity_id)
    if row is None:
        raise NotFoundError(entity, entity_id)
    return row


class UserService:
    entity_type = "crm.user"

    def list_users(self, session: Session) -> list[UserRead]:
        rows = session.scalars(select(CRMUser).order_by(CRMUser.id)).all()
        return [UserRead.model_validate(row) for row in rows]

    def get_user(self, session: Session, user_id: int) -> UserRead:
        return UserRead.model_validate(self._get_user(session, user_id))

    def create_user(self, session: Session, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        with atomic(session, "username or email already in use"):
            self._ensure_unique(session, username=dto.username, email=str(dto.email))
            user = CRMUser(**dto.model_dump())
            session.add(user)
            session.flush()
            created = UserRead.model_validate(user)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=user.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return created

    def update_user(self, session: Session, actor_user: ActorUser, user_id: int, dto: UserUpdate) -> UserRead:
        user = self._get_user(session, user_id)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            return UserRead.model_validate(user)
        before = UserRead.model_validate(user).model_dump(mode="json")
        with atomic(session, "email already in use"):
            if payload.get("email") is not None:
                self._ensure_unique(session, email=str(payload["email"]), exclude_id=user.id)
            for key, value in payload.items():
                setattr(user, key, value)
            session.flush()
            updated = UserRead.model_validate(user)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=user.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return updated

    def _get_user(self, session: Session, user_id: int) -> CRMUser:
        user = session.get(CRMUser, user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    def _ensure_unique(
        self,
        session: Session,
        *,
        username: str | None = None,
        email: str | None = None,
        exclude_id: int | None = None,
    ) -> None:
        if username is not None:
            existing = session.scalar(select(CRMUser.id).where(CRMUser.username == username))
            if existing is not None and existing != exclude_id:
                raise ConflictError("username already in use", details={"field": "username"})
        if email is not None:
            existing = session.scalar(select(CRMUser.id).where(func.lower(CRMUser.email) == email.lower()))
            if existing is not None and existing != exclude_id:
                raise ConflictError("email already in use", details={"field": "email"})


class AccountService:
    entity_type = "crm.account"

    def list_accounts(self, session: Session) -> list[AccountRead]:
        rows = session.scalars(select(CRMAccount).order_by(CRMAccount.id)).all()
        return [AccountRead.model_validate(row) for row in rows]

    def get_account(self, session: Session, account_id: int) -> AccountRead:
        return AccountRead.model_validate(self._get_account(session, account_id))

    def create_account(self, session: Session, actor_user: ActorUser, dto: AccountCreate) -> AccountRead:
        with atomic(session):
            account = CRMAccount(**dto.model_dump())
            account.company_name = account.company_name.strip()
            session.add(account)
            session.flush()
            created = AccountRead.model_validate(account)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=account.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return created

    def update_account(self, session: Session, actor_user: ActorUser, account_id: int, dto: AccountUpdate) -> AccountRead:
        account = self._get_account(session, account_id)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            return AccountRead.model_validate(account)
        before = AccountRead.model_validate(account).model_dump(mode="json")
        with atomic(session):
            for key, value in payload.items():
                setattr(account, key, value)
            session.flush()
            updated = AccountRead.model_validate(account)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=account.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return updated

    def _get_account(self, session: Session, account_id: int) -> CRMAccount:
        account = session.get(CRMAccount, account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account


class ContactService:
    entity_type = "crm.contact"

    def list_contacts(self, session: Session, *, account_id: int | None = None) -> list[ContactRead]:
        stmt = select(CRMContact).order_by(CRMContact.id)
        if account_id is not None:
            stmt = stmt.where(CRMContact.account_id == account_id)
        return [ContactRead.model_validate(row) for row in session.scalars(stmt).all()]

    def get_contact(self, session: Session, contact_id: int) -> ContactRead:
        return ContactRead.model_validate(self._get_contact(session, contact_id))

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        _require(session, CRMAccount, dto.account_id, "account")
        with atomic(session, "email already in use"):
            self.ensure_email_available(session, str(dto.email))
            contact = CRMContact(**dto.model_dump())
            session.add(contact)
            session.flush()
            created = ContactRead.model_validate(contact)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=contact.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return created

    def update_contact(self, session: Session, actor_user: ActorUser, contact_id: int, dto: ContactUpdate) -> ContactRead:
        contact = self._get_contact(session, contact_id)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            return ContactRead.model_validate(contact)
        _require(session, CRMAccount, payload.get("account_id"), "account")
        before = ContactRead.model_validate(contact).model_dump(mode="json")
        with atomic(session, "email already in use"):
            if payload.get("email") is not None:
                self.ensure_email_available(session, str(payload["email"]), exclude_id=contact.id)
            for key, value in payload.items():
                setattr(contact, key, value)
            session.flush()
            updated = ContactRead.model_validate(contact)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=contact.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return updated

    def find_by_email(self, session: Session, email: str) -> CRMContact | None:
        return session.scalar(select(CRMContact).where(func.lower(CRMContact.email) == email.lower()))

    def ensure_email_available(self, session: Session, email: str, exclude_id: int | None = None) -> None:
        existing = self.find_by_email(session, email)
        if existing is not None and existing.id != exclude_id:
            raise ConflictError("email already in use", details={"field": "email"})

    def _get_contact(self, session: Session, contact_id: int) -> CRMContact:
        contact = session.get(CRMContact, contact_id)
        if contact is None:
            raise NotFoundError("contact", contact_id)
        return contact


class LeadService:
    entity_type = "crm.lead"

    def list_leads(self, session: Session, *, status: str | None = None) -> list[LeadRead]:
        stmt = select(CRMLead).order_by(CRMLead.id)
        if status is not None:
            stmt = stmt.where(CRMLead.status == status)
        return [LeadRead.model_validate(row) for row in session.scalars(stmt).all()]

    def get_lead(self, session: Session, lead_id: int) -> LeadRead:
        return LeadRead.model_validate(self._get_lead(session, lead_id))

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        _require(session, CRMUser, dto.owner_id, "user")
        with atomic(session, "email already in use"):
            self._ensure_email_available(session, str(dto.email))
            lead = CRMLead(**dto.model_dump())
            session.add(lead)
            session.flush()
            created = LeadRead.model_validate(lead)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=lead.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return created

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadUpdate) -> LeadRead:
        lead = self._get_lead(session, lead_id)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            return LeadRead.model_validate(lead)
        _require(session, CRMUser, payload.get("owner_id"), "user")
        before = LeadRead.model_validate(lead).model_dump(mode="json")
        with atomic(session, "email already in use"):
            if payload.get("email") is not None:
                self._ensure_email_available(session, str(payload["email"]), exclude_id=lead.id)
            for key, value in payload.items():
                setattr(lead, key, value)
            session.flush()
            updated = LeadRead.model_validate(lead)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=lead.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return updated

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: int,
        dto: LeadConvertRequest,
    ) -> OpportunityRead:
        """Create an opportunity from a lead without touching the lead.

        A contact is only created (or reused by email) when an account is
        selected and no contact was picked. Any linked contact must belong to
        the selected account. Each call yields a new opportunity.
        """
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("crm.lead_id", lead_id)
            name = (dto.name or "").strip()
            if not name:
                raise ValidationError("name", "opportunity name is required")
            lead = self._get_lead(session, lead_id)

            account: CRMAccount | None = None
            if dto.account_id is not None:
                account = session.get(CRMAccount, dto.account_id)
                if account is None:
                    raise ValidationError("accountId", "selected account could not be resolved")
            contact: CRMContact | None = None
            if dto.contact_id is not None:
                contact = session.get(CRMContact, dto.contact_id)
                if contact is None:
                    raise ValidationError("contactId", "selected contact could not be resolved")
                if account is not None and contact.account_id != account.id:
                    raise ValidationError("contactId", "selected contact does not belong to the selected account")
            validate_stage(dto.stage)
            _validate_probability(dto.probability)

            with atomic(session):
                if contact is None and account is not None and dto.create_contact:
                    contact = self._contact_for_lead(session, actor_user, lead, account)

                value = quantize_money(dto.value) if dto.value is not None else Decimal("0.00")
                gross_profit = Decimal("0.00")
                opportunity = CRMOpportunity(
                    name=name,
                    lead_id=lead.id,
                    lead_source=lead.source,
                    account_id=account.id if account is not None else None,
                    contact_id=contact.id if contact is not None else None,
                    owner_id=dto.owner_id if dto.owner_id is not None else lead.owner_id,
                    stage=dto.stage,
                    probability=dto.probability or 0,
                    value=value,
                    gross_profit=gross_profit,
                    gross_profit_margin=margin_for(value, gross_profit),
                    close_date=dto.close_date,
                    description=dto.description,
                )
                session.add(opportunity)
                session.flush()
                created = OpportunityRead.model_validate(opportunity)
                audit.record(
                    actor_user_id=actor_user.user_id,
                    entity_type="crm.opportunity",
                    entity_id=opportunity.id,
                    action="convert_lead",
                    before=None,
                    after=created.model_dump(mode="json"),
                    correlation_id=actor_user.correlation_id,
                )
                events.publish(
                    "crm.lead.converted",
                    {
                        "lead_id": lead.id,
                        "opportunity_id": opportunity.id,
                        "account_id": opportunity.account_id,
                        "contact_id": opportunity.contact_id,
                    },
                    actor_user_id=actor_user.user_id,
                )

            span.set_attribute("crm.opportunity_id", created.id)
            observe_lead_conversion()
            logger.info(
                "lead.converted",
                extra={"lead_id": lead.id, "opportunity_id": created.id},
            )
            return created

    def _contact_for_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        account: CRMAccount,
    ) -> CRMContact:
        existing = contact_service.find_by_email(session, lead.email)
        if existing is not None:
            if existing.account_id == account.id:
                return existing
            # Contact emails are unique, so a second contact cannot be created.
            raise ConflictError(
                "a contact with the lead's email belongs to another account",
                details={"contact_id": existing.id, "account_id": existing.account_id},
            )
        contact = CRMContact(
            account_id=account.id,
            first_name=lead.first_name,
            last_name=lead.last_name,
            email=lead.email,
            phone=lead.phone,
            title=lead.title,
        )
        session.add(contact)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=contact_service.entity_type,
            entity_id=contact.id,
            action="create_from_lead",
            before=None,
            after=ContactRead.model_validate(contact).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return contact

    def _ensure_email_available(self, session: Session, email: str, exclude_id: int | None = None) -> None:
        existing = session.scalar(select(CRMLead.id).where(func.lower(CRMLead.email) == email.lower()))
        if existing is not None and existing != exclude_id:
            raise ConflictError("email already in use", details={"field": "email"})

    def _get_lead(self, session: Session, lead_id: int) -> CRMLead:
        lead = session.get(CRMLead, lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        return lead


class OpportunityService:
    entity_type = "crm.opportunity"

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        validate_stage(dto.stage)
        _validate_probability(dto.probability)
        _require(session, CRMAccount, dto.account_id, "account")
        _require(session, CRMContact, dto.contact_id, "contact")
        _require(session, CRMLead, dto.lead_id, "lead")
        _require(session, CRMUser, dto.owner_id, "user")

        value = quantize_money(dto.value) if dto.value is not None else Decimal("0.00")
        gross_profit = quantize_money(dto.gross_profit) if dto.gross_profit is not None else Decimal("0.00")
        with atomic(session):
            opportunity = CRMOpportunity(
                name=dto.name.strip(),
                account_id=dto.account_id,
                contact_id=dto.contact_id,
                lead_id=dto.lead_id,
                owner_id=dto.owner_id,
                stage=dto.stage,
                probability=dto.probability,
                value=value,
                gross_profit=gross_profit,
                gross_profit_margin=margin_for(value, gross_profit),
                close_date=dto.close_date,
                lead_source=dto.lead_source,
                description=dto.description,
            )
            session.add(opportunity)
            session.flush()
            created = self._to_read(opportunity)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=opportunity.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                "crm.opportunity.created",
                {"opportunity_id": opportunity.id, "account_id": opportunity.account_id, "stage": opportunity.stage},
                actor_user_id=actor_user.user_id,
            )
        return created

    def list_opportunities(
        self,
        session: Session,
        *,
        stage: str | None = None,
        account_id: int | None = None,
        lead_id: int | None = None,
    ) -> list[OpportunityRead]:
        stmt = select(CRMOpportunity).order_by(CRMOpportunity.id)
        if stage is not None:
            stmt = stmt.where(CRMOpportunity.stage == stage)
        if account_id is not None:
            stmt = stmt.where(CRMOpportunity.account_id == account_id)
        if lead_id is not None:
            stmt = stmt.where(CRMOpportunity.lead_id == lead_id)
        return [self._to_read(row) for row in session.scalars(stmt).all()]

    def get_opportunity(self, session: Session, opportunity_id: int) -> OpportunityRead:
        return self._to_read(self._get_opportunity(session, opportunity_id))

    def get_with_relations(self, session: Session, opportunity_id: int) -> OpportunityWithRelations:
        opportunity = session.scalar(
            select(CRMOpportunity)
            .where(CRMOpportunity.id == opportunity_id)
            .options(
                selectinload(CRMOpportunity.account),
                selectinload(CRMOpportunity.contact),
                selectinload(CRMOpportunity.owner),
                selectinload(CRMOpportunity.stage_logs).selectinload(CRMStageChangeLog.user),
            )
        )
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)

        orders = session.scalars(
            select(RevenueOrder)
            .where(RevenueOrder.opportunity_id == opportunity.id)
            .options(selectinload(RevenueOrder.items).selectinload(RevenueOrderItem.product))
            .order_by(RevenueOrder.id)
        ).all()
        activities = session.scalars(
            select(CRMActivity)
            .where(CRMActivity.opportunity_id == opportunity.id)
            .order_by(CRMActivity.created_at.desc(), CRMActivity.id.desc())
        ).all()

        return OpportunityWithRelations(
            **self._to_read(opportunity).model_dump(),
            account=AccountRead.model_validate(opportunity.account) if opportunity.account else None,
            contact=ContactRead.model_validate(opportunity.contact) if opportunity.contact else None,
            owner=UserRead.model_validate(opportunity.owner) if opportunity.owner else None,
            orders=[OrderWithItems.model_validate(order) for order in orders],
            stage_logs=[StageChangeLogWithUser.model_validate(log) for log in opportunity.stage_logs],
            activities=[ActivityRead.model_validate(activity) for activity in activities],
        )

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: int,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        """Apply a partial edit.

        A ``stage`` in the body runs the full transition (reason required).
        ``value``/``grossProfit`` edits re-derive the margin and are refused
        once the opportunity is closed.
        """
        opportunity = self._get_opportunity(session, opportunity_id)
        payload = dto.model_dump(exclude_unset=True)
        expected_version = payload.pop("row_version", None)
        target_stage = payload.pop("stage", None)
        reason = payload.pop("reason", None)
        changed_by = payload.pop("changed_by", None)
        if target_stage == opportunity.stage:
            target_stage = None

        if target_stage is not None:
            reason = validate_transition(opportunity.stage, target_stage, reason)
        if "value" in payload or "gross_profit" in payload:
            ensure_open(opportunity.stage, "edit_financials")
        if "probability" in payload:
            if payload["probability"] is None:
                raise ValidationError("probability", "probability must be between 0 and 100")
            _validate_probability(payload["probability"])
        for field_name, model, entity in (
            ("account_id", CRMAccount, "account"),
            ("contact_id", CRMContact, "contact"),
            ("owner_id", CRMUser, "user"),
        ):
            _require(session, model, payload.get(field_name), entity)
        if not payload and target_stage is None:
            return self._to_read(opportunity)

        if "name" in payload and payload["name"] is not None:
            payload["name"] = payload["name"].strip()
        if "value" in payload or "gross_profit" in payload:
            value = quantize_money(payload.get("value") if payload.get("value") is not None else opportunity.value)
            gross_profit = quantize_money(
                payload.get("gross_profit") if payload.get("gross_profit") is not None else opportunity.gross_profit
            )
            payload["value"] = value
            payload["gross_profit"] = gross_profit
            payload["gross_profit_margin"] = margin_for(value, gross_profit)

        before = self._to_read(opportunity).model_dump(mode="json")
        version = expected_version if expected_version is not None else opportunity.row_version
        from_stage = opportunity.stage
        actor_id = changed_by if changed_by is not None else actor_user.user_id

        with atomic(session):
            if payload:
                version = self._guarded_update(session, opportunity, version, payload)
                session.refresh(opportunity)
            if target_stage is not None:
                self._write_transition(session, opportunity, version, target_stage, reason, actor_id)
            session.refresh(opportunity)
            updated = self._to_read(opportunity)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=opportunity.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                "crm.opportunity.updated",
                {"opportunity_id": opportunity.id, "row_version": updated.row_version},
                actor_user_id=actor_user.user_id,
            )
            if target_stage is not None:
                self._publish_stage_events(actor_user, opportunity.id, from_stage, target_stage, reason)

        if target_stage is not None:
            self._observe_transition(opportunity.id, from_stage, target_stage)
        return updated

    def transition_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: int,
        dto: StageTransitionRequest,
    ) -> OpportunityRead:
        """Move an open opportunity to another stage.

        The stage write, its log row and the ``stage_change`` activity land
        in one transaction guarded by ``row_version``.
        """
        with tracer.start_as_current_span("crm.opportunity.transition_stage") as span:
            span.set_attribute("crm.opportunity_id", opportunity_id)
            opportunity = self._get_opportunity(session, opportunity_id)
            from_stage = opportunity.stage
            reason = validate_transition(from_stage, dto.stage, dto.reason)
            span.set_attribute("crm.from_stage", from_stage)
            span.set_attribute("crm.to_stage", dto.stage)
            actor_id = dto.changed_by if dto.changed_by is not None else actor_user.user_id
            before = self._to_read(opportunity).model_dump(mode="json")

            with atomic(session):
                self._write_transition(session, opportunity, opportunity.row_version, dto.stage, reason, actor_id)
                session.refresh(opportunity)
                updated = self._to_read(opportunity)
                audit.record(
                    actor_user_id=actor_user.user_id,
                    entity_type=self.entity_type,
                    entity_id=opportunity.id,
                    action="change_stage",
                    before=before,
                    after=updated.model_dump(mode="json"),
                    correlation_id=actor_user.correlation_id,
                )
                self._publish_stage_events(actor_user, opportunity.id, from_stage, dto.stage, reason)

            self._observe_transition(opportunity.id, from_stage, dto.stage)
            return updated

    def list_stage_logs(self, session: Session, opportunity_id: int) -> list[StageChangeLogRead]:
        self._get_opportunity(session, opportunity_id)
        rows = session.scalars(
            select(CRMStageChangeLog)
            .where(CRMStageChangeLog.opportunity_id == opportunity_id)
            .order_by(CRMStageChangeLog.created_at, CRMStageChangeLog.id)
        ).all()
        return [StageChangeLogRead.model_validate(row) for row in rows]

    def _guarded_update(self, session: Session, opportunity: CRMOpportunity, version: int, values: dict[str, Any]) -> int:
        result = session.execute(
            update(CRMOpportunity)
            .where(and_(CRMOpportunity.id == opportunity.id, CRMOpportunity.row_version == version))
            .values(**values, updated_at=utcnow(), row_version=CRMOpportunity.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError("row_version conflict", details={"opportunity_id": opportunity.id})
        return version + 1

    def _write_transition(
        self,
        session: Session,
        opportunity: CRMOpportunity,
        version: int,
        to_stage: str,
        reason: str,
        actor_id: int | None,
    ) -> None:
        from_stage = opportunity.stage
        self._guarded_update(session, opportunity, version, {"stage": to_stage})
        session.add(
            CRMStageChangeLog(
                opportunity_id=opportunity.id,
                from_stage=from_stage,
                to_stage=to_stage,
                changed_by=actor_id,
                reason=reason,
            )
        )
        session.add(
            CRMActivity(
                opportunity_id=opportunity.id,
                account_id=opportunity.account_id,
                contact_id=opportunity.contact_id,
                type="stage_change",
                subject=stage_change_subject(from_stage, to_stage),
                description=reason,
                completed=True,
                created_by=actor_id,
            )
        )
        session.flush()

    def _publish_stage_events(
        self,
        actor_user: ActorUser,
        opportunity_id: int,
        from_stage: str,
        to_stage: str,
        reason: str,
    ) -> None:
        payload = {"opportunity_id": opportunity_id, "from_stage": from_stage, "to_stage": to_stage, "reason": reason}
        events.publish("crm.opportunity.stage_changed", payload, actor_user_id=actor_user.user_id)
        if to_stage == CLOSED_WON:
            events.publish("crm.opportunity.closed_won", payload, actor_user_id=actor_user.user_id)
        elif to_stage == CLOSED_LOST:
            events.publish("crm.opportunity.closed_lost", payload, actor_user_id=actor_user.user_id)

    def _observe_transition(self, opportunity_id: int, from_stage: str, to_stage: str) -> None:
        observe_stage_transition(from_stage, to_stage)
        logger.info(
            "opportunity.stage_changed",
            extra={"opportunity_id": opportunity_id, "from_stage": from_stage, "to_stage": to_stage},
        )

    def _get_opportunity(self, session: Session, opportunity_id: int) -> CRMOpportunity:
        opportunity = session.get(CRMOpportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        return opportunity

    def _to_read(self, opportunity: CRMOpportunity) -> OpportunityRead:
        return OpportunityRead.model_validate(opportunity)


class ActivityService:
    entity_type = "crm.activity"

    def list_activities(
        self,
        session: Session,
        *,
        opportunity_id: int | None = None,
        lead_id: int | None = None,
        account_id: int | None = None,
        contact_id: int | None = None,
    ) -> list[ActivityRead]:
        stmt = select(CRMActivity).order_by(CRMActivity.created_at.desc(), CRMActivity.id.desc())
        if opportunity_id is not None:
            stmt = stmt.where(CRMActivity.opportunity_id == opportunity_id)
        if lead_id is not None:
            stmt = stmt.where(CRMActivity.lead_id == lead_id)
        if account_id is not None:
            stmt = stmt.where(CRMActivity.account_id == account_id)
        if contact_id is not None:
            stmt = stmt.where(CRMActivity.contact_id == contact_id)
        return [ActivityRead.model_validate(row) for row in session.scalars(stmt).all()]

    def create_activity(self, session: Session, actor_user: ActorUser, dto: ActivityCreate) -> ActivityRead:
        _require(session, CRMAccount, dto.account_id, "account")
        _require(session, CRMContact, dto.contact_id, "contact")
        _require(session, CRMLead, dto.lead_id, "lead")
        _require(session, CRMOpportunity, dto.opportunity_id, "opportunity")
        data = dto.model_dump()
        if data["created_by"] is None:
            data["created_by"] = actor_user.user_id
        data["subject"] = data["subject"].strip()
        with atomic(session):
            activity = CRMActivity(**data)
            session.add(activity)
            session.flush()
            created = ActivityRead.model_validate(activity)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=activity.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return created

    def update_activity(self, session: Session, actor_user: ActorUser, activity_id: int, dto: ActivityUpdate) -> ActivityRead:
        activity = session.get(CRMActivity, activity_id)
        if activity is None:
            raise NotFoundError("activity", activity_id)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            return ActivityRead.model_validate(activity)
        before = ActivityRead.model_validate(activity).model_dump(mode="json")
        with atomic(session):
            for key, value in payload.items():
                setattr(activity, key, value)
            session.flush()
            updated = ActivityRead.model_validate(activity)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=activity.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return updated


class NoteService:
    entity_type = "crm.note"

    _parents = (
        ("account_id", CRMAccount, "account"),
        ("contact_id", CRMContact, "contact"),
        ("lead_id", CRMLead, "lead"),
        ("opportunity_id", CRMOpportunity, "opportunity"),
    )

    def list_notes(
        self,
        session: Session,
        *,
        lead_id: int | None = None,
        opportunity_id: int | None = None,
        account_id: int | None = None,
        contact_id: int | None = None,
    ) -> list[NoteRead]:
        stmt = select(CRMNote).order_by(CRMNote.created_at.desc(), CRMNote.id.desc())
        if lead_id is not None:
            stmt = stmt.where(CRMNote.lead_id == lead_id)
        if opportunity_id is not None:
            stmt = stmt.where(CRMNote.opportunity_id == opportunity_id)
        if account_id is not None:
            stmt = stmt.where(CRMNote.account_id == account_id)
        if contact_id is not None:
            stmt = stmt.where(CRMNote.contact_id == contact_id)
        return [NoteRead.model_validate(row) for row in session.scalars(stmt).all()]

    def create_note(self, session: Session, actor_user: ActorUser, dto: NoteCreate) -> NoteRead:
        data = dto.model_dump()
        if all(data[field_name] is None for field_name, _, _ in self._parents):
            raise ValidationError("parent", "a note must reference an account, contact, lead or opportunity")
        for field_name, model, entity in self._parents:
            _require(session, model, data[field_name], entity)
        if data["created_by"] is None:
            data["created_by"] = actor_user.user_id
        with atomic(session):
            note = CRMNote(**data)
            session.add(note)
            session.flush()
            created = NoteRead.model_validate(note)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=note.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return created

    def update_note(self, session: Session, actor_user: ActorUser, note_id: int, dto: NoteUpdate) -> NoteRead:
        note = self._get_note(session, note_id)
        before = NoteRead.model_validate(note).model_dump(mode="json")
        with atomic(session):
            note.content = dto.content
            note.updated_at = utcnow()
            session.flush()
            updated = NoteRead.model_validate(note)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=note.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return updated

    def delete_note(self, session: Session, actor_user: ActorUser, note_id: int) -> None:
        note = self._get_note(session, note_id)
        before = NoteRead.model_validate(note).model_dump(mode="json")
        with atomic(session):
            session.delete(note)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=note_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )

    def _get_note(self, session: Session, note_id: int) -> CRMNote:
        note = session.get(CRMNote, note_id)
        if note is None:
            raise NotFoundError("note", note_id)
        return note


def _growth(current: Decimal | int, previous: Decimal | int) -> float:
    if not previous:
        return 0.0
    return round(float((Decimal(current) - Decimal(previous)) / Decimal(previous) * 100), 1)


class DashboardService:
    def get_metrics(self, session: Session, *, now: datetime | None = None) -> DashboardMetrics:
        now = now or utcnow()
        recent_start = now - GROWTH_WINDOW
        prior_start = recent_start - GROWTH_WINDOW

        opportunities = session.scalars(select(CRMOpportunity)).all()
        open_opportunities = [row for row in opportunities if row.stage not in TERMINAL_STAGES]
        won = [row for row in opportunities if row.stage == CLOSED_WON]

        revenue = quantize_money(sum((Decimal(row.value) for row in won), Decimal("0")))
        pipeline_value = quantize_money(sum((Decimal(row.value) for row in open_opportunities), Decimal("0")))
        weighted_pipeline = quantize_money(
            sum((weighted_value_for(row.value, row.probability) for row in open_opportunities), Decimal("0"))
        )
        conversion_rate = round(len(won) / len(opportunities) * 100, 1) if opportunities else 0.0

        won_recent = sum((Decimal(row.value) for row in won if self._in_window(row.created_at, recent_start, now)), Decimal("0"))
        won_prior = sum(
            (Decimal(row.value) for row in won if self._in_window(row.created_at, prior_start, recent_start)),
            Decimal("0"),
        )
        opp_recent = sum(1 for row in opportunities if self._in_window(row.created_at, recent_start, now))
        opp_prior = sum(1 for row in opportunities if self._in_window(row.created_at, prior_start, recent_start))

        return DashboardMetrics(
            total_accounts=self._count(session, CRMAccount),
            total_contacts=self._count(session, CRMContact),
            total_leads=self._count(session, CRMLead),
            active_opportunities=len(open_opportunities),
            revenue=revenue,
            conversion_rate=conversion_rate,
            pipeline_value=pipeline_value,
            weighted_pipeline_value=weighted_pipeline,
            account_growth=self._window_growth(session, CRMAccount, prior_start, recent_start, now),
            lead_growth=self._window_growth(session, CRMLead, prior_start, recent_start, now),
            opportunity_growth=_growth(opp_recent, opp_prior),
            revenue_growth=_growth(won_recent, won_prior),
        )

    def _count(self, session: Session, model: type[Any]) -> int:
        return int(session.scalar(select(func.count()).select_from(model)) or 0)

    def _window_growth(
        self,
        session: Session,
        model: type[Any],
        prior_start: datetime,
        recent_start: datetime,
        now: datetime,
    ) -> float:
        created = session.scalars(select(model.created_at)).all()
        recent = sum(1 for value in created if self._in_window(value, recent_start, now))
        prior = sum(1 for value in created if self._in_window(value, prior_start, recent_start))
        return _growth(recent, prior)

    @staticmethod
    def _in_window(value: datetime | None, start: datetime, end: datetime) -> bool:
        if value is None:
            return False
        # sqlite hands back naive datetimes; they were written as UTC.
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return start <= value < end


user_service = UserService()
account_service = AccountService()
contact_service = ContactService()
lead_service = LeadService()
opportunity_service = OpportunityService()
activity_service = ActivityService()
note_service = NoteService()
dashboard_service = DashboardService()
