# models.py

from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import inspect
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db

DEFAULT_ROLES = ("admin", "manager", "clerk", "auditor")

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETE = "complete"
RUN_STATUS_INTERRUPTED = "interrupted"
RUN_STATUS_CANCELLED = "cancelled"

RUN_TRIGGER_OPENING_EDIT = "opening_edit"
RUN_TRIGGER_RECEIPT = "receipt"
RUN_TRIGGER_SALE = "sale"
RUN_TRIGGER_MANUAL = "manual"
RUN_TRIGGER_RESYNC = "resync"


class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    # admin, manager, clerk, auditor
    name = db.Column(db.String(50), unique=True, nullable=False)

    def __repr__(self):
        return f"<Role {self.name}>"


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"))
    role = db.relationship("Role", backref="users")

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def has_role(self, name: str) -> bool:
        return self.role is not None and self.role.name == name

    def __repr__(self):
        return f"<User {self.full_name}>"


class Location(db.Model):
    """A bar / shop whose stock is tracked. Managed elsewhere; read by reference."""

    __tablename__ = "locations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    address = db.Column(db.String(255), nullable=True)

    def __repr__(self):
        return f"<Location {self.name}>"


class Item(db.Model):
    """A stocked brand/size. Managed elsewhere; read by reference."""

    __tablename__ = "items"

    id = db.Column(db.Integer, primary_key=True)
    item_code = db.Column(db.String(50), unique=True, nullable=True)
    name = db.Column(db.String(200), nullable=False)
    size = db.Column(db.String(50), nullable=True)
    category = db.Column(db.String(50), nullable=True)

    def __repr__(self):
        return f"<Item {self.item_code or self.id} {self.name}>"


class LedgerEntry(db.Model):
    """
    One stock cell: (location, item, day).

    closing_qty is always opening_qty + receipt_qty - sale_qty; receipt_qty and
    sale_qty mirror the event tables and are only written by the synchronizers
    and the propagation engine.
    """

    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.UniqueConstraint(
            "location_id", "item_id", "day", name="uq_ledger_entries_location_item_day"
        ),
        db.CheckConstraint("receipt_qty >= 0", name="ck_ledger_entries_receipt_qty_non_negative"),
        db.CheckConstraint("sale_qty >= 0", name="ck_ledger_entries_sale_qty_non_negative"),
        db.CheckConstraint(
            "closing_qty = opening_qty + receipt_qty - sale_qty",
            name="ck_ledger_entries_closing_balance",
        ),
        db.Index("ix_ledger_entries_location_day", "location_id", "day"),
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False)
    day = db.Column(db.Date, nullable=False)

    opening_qty = db.Column(db.Integer, nullable=False, default=0)
    receipt_qty = db.Column(db.Integer, nullable=False, default=0)
    sale_qty = db.Column(db.Integer, nullable=False, default=0)
    closing_qty = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    location = db.relationship("Location")
    item = db.relationship("Item")

    @property
    def key(self) -> tuple:
        return (self.location_id, self.item_id, self.day)

    @property
    def is_negative(self) -> bool:
        # negative stock is allowed; callers surface it as a warning
        return (self.closing_qty or 0) < 0

    def to_dict(self) -> dict:
        return {
            "location_id": self.location_id,
            "item_id": self.item_id,
            "day": self.day.isoformat(),
            "opening_qty": self.opening_qty,
            "receipt_qty": self.receipt_qty,
            "sale_qty": self.sale_qty,
            "closing_qty": self.closing_qty,
            "is_negative": self.is_negative,
        }

    def __repr__(self):
        return (
            f"<LedgerEntry L{self.location_id} I{self.item_id} {self.day} "
            f"{self.opening_qty}+{self.receipt_qty}-{self.sale_qty}={self.closing_qty}>"
        )


class TransferPermit(db.Model):
    """Transport permit: the document that groups received stock lines."""

    __tablename__ = "transfer_permits"
    __table_args__ = (
        db.UniqueConstraint("permit_no", "location_id", name="uq_transfer_permits_no_location"),
        db.Index("ix_transfer_permits_location_date", "location_id", "permit_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    permit_no = db.Column(db.String(50), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    permit_date = db.Column(db.Date, nullable=False)
    party_name = db.Column(db.String(200), nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    location = db.relationship("Location")
    events = db.relationship(
        "ReceiptEvent",
        backref="permit",
        cascade="all, delete-orphan",
        order_by="ReceiptEvent.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "permit_no": self.permit_no,
            "location_id": self.location_id,
            "permit_date": self.permit_date.isoformat(),
            "party_name": self.party_name,
            "events": [event.to_dict() for event in self.events],
        }

    def __repr__(self):
        return f"<TransferPermit {self.permit_no} @ L{self.location_id}>"


class ReceiptEvent(db.Model):
    __tablename__ = "receipt_events"
    __table_args__ = (
        db.UniqueConstraint("permit_id", "item_id", name="uq_receipt_events_permit_item"),
        db.CheckConstraint("qty > 0", name="ck_receipt_events_qty_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    permit_id = db.Column(db.Integer, db.ForeignKey("transfer_permits.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    qty = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    item = db.relationship("Item")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "permit_id": self.permit_id,
            "item_id": self.item_id,
            "qty": self.qty,
        }

    def __repr__(self):
        return f"<ReceiptEvent {self.id} permit={self.permit_id} item={self.item_id} qty={self.qty}>"


class SaleEvent(db.Model):
    __tablename__ = "sale_events"
    __table_args__ = (
        db.CheckConstraint("qty > 0", name="ck_sale_events_qty_positive"),
        db.Index("ix_sale_events_location_item_date", "location_id", "item_id", "sale_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False)
    sale_date = db.Column(db.Date, nullable=False)
    qty = db.Column(db.Integer, nullable=False)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    item = db.relationship("Item")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "item_id": self.item_id,
            "sale_date": self.sale_date.isoformat(),
            "qty": self.qty,
        }

    def __repr__(self):
        return f"<SaleEvent {self.id} L{self.location_id} I{self.item_id} {self.sale_date} qty={self.qty}>"


class PropagationRun(db.Model):
    """
    Progress record for one cascade.

    A run is "complete" once every day through target_day satisfies the
    continuity rule. "interrupted" and "cancelled" runs carry resume_from,
    the first day that still has to be re-derived.
    """

    __tablename__ = "propagation_runs"
    __table_args__ = (
        db.Index("ix_propagation_runs_location_item", "location_id", "item_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False)
    trigger = db.Column(db.String(30), nullable=False)

    start_day = db.Column(db.Date, nullable=False)
    target_day = db.Column(db.Date, nullable=False)
    days_total = db.Column(db.Integer, nullable=False, default=0)
    days_done = db.Column(db.Integer, nullable=False, default=0)
    last_committed_day = db.Column(db.Date, nullable=True)
    resume_from = db.Column(db.Date, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=RUN_STATUS_RUNNING)
    error = db.Column(db.Text, nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def fully_consistent(self) -> bool:
        return self.status == RUN_STATUS_COMPLETE

    @property
    def progress_message(self) -> str:
        return f"updated {self.days_done} of {self.days_total} days"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "item_id": self.item_id,
            "trigger": self.trigger,
            "start_day": self.start_day.isoformat(),
            "target_day": self.target_day.isoformat(),
            "days_total": self.days_total,
            "days_done": self.days_done,
            "last_committed_day": self.last_committed_day.isoformat() if self.last_committed_day else None,
            "resume_from": self.resume_from.isoformat() if self.resume_from else None,
            "status": self.status,
            "fully_consistent": self.fully_consistent,
            "progress": self.progress_message,
            "error": self.error,
        }

    def __repr__(self):
        return f"<PropagationRun {self.id} {self.status} {self.progress_message}>"


def ensure_schema() -> None:
    """Create any missing tables without touching existing ones."""
    inspector = inspect(db.engine)
    missing = [
        table
        for name, table in db.metadata.tables.items()
        if not inspector.has_table(name)
    ]
    if missing:
        db.metadata.create_all(bind=db.engine, tables=missing, checkfirst=True)


def ensure_roles() -> None:
    """Insert the default roles when the roles table exists and lacks them."""
    inspector = inspect(db.engine)
    if not inspector.has_table(Role.__tablename__):
        return

    existing = {name for (name,) in db.session.query(Role.name).all()}
    created = False
    for role_name in DEFAULT_ROLES:
        if role_name not in existing:
            db.session.add(Role(name=role_name))
            created = True

    if created:
        db.session.commit()
