from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db.base import Base


def utc_now() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Tenant(Base):
    __tablename__ = "Tenants"

    TenantID = Column(Integer, primary_key=True)
    Slug = Column(String(64), nullable=False, unique=True)
    Name = Column(String(255), nullable=False)
    Settings = Column(Text)
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now)

    Users = relationship("User", back_populates="Tenant")


class User(Base):
    __tablename__ = "Users"
    __table_args__ = (UniqueConstraint("TenantID", "Email", name="uq_users_tenant_email"),)

    UserID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    Email = Column(String(255), nullable=False)
    FullName = Column(String(255), nullable=False)
    Department = Column(String(100))
    Role = Column(String(20), nullable=False, default="student")
    IsActive = Column(Boolean, nullable=False, default=True)
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    PasswordUpdatedAt = Column(Integer)
    LastLogin = Column(DateTime)
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now)

    Tenant = relationship("Tenant", back_populates="Users")


class Category(Base):
    __tablename__ = "Categories"
    __table_args__ = (UniqueConstraint("TenantID", "CategoryName", name="uq_categories_tenant_name"),)

    CategoryID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    CategoryName = Column(String(100), nullable=False)
    Description = Column(String(500))
    CreatedDate = Column(DateTime, default=utc_now)

    Equipment = relationship("Equipment", back_populates="Category")


class Equipment(Base):
    __tablename__ = "Equipment"
    __table_args__ = (CheckConstraint("TotalQuantity >= 0", name="ck_equipment_quantity"),)

    EquipmentID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID"))
    EquipmentName = Column(String(255), nullable=False)
    Description = Column(String(2000))
    TotalQuantity = Column(Integer, nullable=False, default=1)
    Condition = Column(String(20), nullable=False, default="good")
    Status = Column(String(20), nullable=False, default="available")
    Specifications = Column(Text)
    ImagePath = Column(String(500))
    LastMaintenance = Column(Date)
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now)

    Category = relationship("Category", back_populates="Equipment")
    Dependencies = relationship(
        "EquipmentDependency",
        foreign_keys="EquipmentDependency.ParentEquipmentID",
        back_populates="Parent",
        cascade="all, delete-orphan",
    )
    ReservationItems = relationship("ReservationItem", back_populates="Equipment")


class EquipmentDependency(Base):
    __tablename__ = "EquipmentDependencies"
    __table_args__ = (
        UniqueConstraint("ParentEquipmentID", "ChildEquipmentID", name="uq_dependency_pair"),
        CheckConstraint("ParentEquipmentID <> ChildEquipmentID", name="ck_dependency_not_self"),
        CheckConstraint("Quantity >= 1", name="ck_dependency_quantity"),
    )

    DependencyID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    ParentEquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    ChildEquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    DependencyType = Column(String(20), nullable=False, default="required")
    Quantity = Column(Integer, nullable=False, default=1)
    CreatedDate = Column(DateTime, default=utc_now)

    Parent = relationship("Equipment", foreign_keys=[ParentEquipmentID], back_populates="Dependencies")
    Child = relationship("Equipment", foreign_keys=[ChildEquipmentID])


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        UniqueConstraint("TenantID", "ReservationNumber", name="uq_reservations_tenant_number"),
        CheckConstraint("EndDate > StartDate", name="ck_reservation_interval"),
    )

    ReservationID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    ReservationNumber = Column(String(50), nullable=False)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    Purpose = Column(String(1000), nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    Version = Column(Integer, nullable=False)
    ApprovedBy = Column(Integer)
    ApprovalDate = Column(DateTime)
    DecisionReason = Column(String(1000))
    CheckedOutBy = Column(Integer)
    CheckedOutAt = Column(DateTime)
    CheckedInBy = Column(Integer)
    CheckedInAt = Column(DateTime)
    CancelledBy = Column(Integer)
    CancelledAt = Column(DateTime)
    OverdueNotifiedAt = Column(DateTime)
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now)

    __mapper_args__ = {"version_id_col": Version}

    Owner = relationship("User")
    ReservationItems = relationship(
        "ReservationItem",
        back_populates="Reservation",
        cascade="all, delete-orphan",
        order_by="ReservationItem.ReservationItemID",
    )


class ReservationItem(Base):
    __tablename__ = "ReservationItems"
    __table_args__ = (CheckConstraint("Quantity >= 1", name="ck_reservation_item_quantity"),)

    ReservationItemID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"), nullable=False, index=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    IsDependency = Column(Boolean, nullable=False, default=False)
    ParentEquipmentID = Column(Integer)
    CheckoutCondition = Column(String(20))
    CheckoutNotes = Column(String(500))
    CheckinCondition = Column(String(20))
    CheckinNotes = Column(String(500))

    Reservation = relationship("Reservation", back_populates="ReservationItems")
    Equipment = relationship("Equipment", back_populates="ReservationItems")


class TenantSequence(Base):
    __tablename__ = "TenantSequences"

    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), primary_key=True)
    SequenceName = Column(String(50), primary_key=True)
    LastValue = Column(Integer, nullable=False, default=0)


class AuditLog(Base):
    __tablename__ = "AuditLogs"
    __table_args__ = (UniqueConstraint("TenantID", "Sequence", name="uq_audit_tenant_sequence"),)

    AuditID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    Sequence = Column(Integer, nullable=False)
    ActorRef = Column(String(64), nullable=False)
    Action = Column(String(100), nullable=False)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer)
    BeforeState = Column(Text)
    AfterState = Column(Text)
    Result = Column(String(20), nullable=False, default="success")
    Details = Column(String(2000))
    RequestID = Column(String(64))
    CreatedAt = Column(DateTime, default=utc_now)


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    ReservationID = Column(Integer)
    RecipientUserID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    Attempts = Column(Integer, nullable=False, default=0)
    LastError = Column(String(1000))
    NextAttemptAt = Column(DateTime)
    CreatedAt = Column(DateTime, default=utc_now)
    SentAt = Column(DateTime)
    FailedAt = Column(DateTime)
