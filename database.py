from sqlalchemy import (
    Column, Integer, BigInteger, Float, String, Boolean, ForeignKey, DateTime, Text, JSON,
    UniqueConstraint, create_engine
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from datetime import datetime, timezone
import json
import logging

logger = logging.getLogger(__name__)

# Declare base for using SQLAlchemy
Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the format every table stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Panel status values
PANEL_CONNECTED = 'connected'
PANEL_DISCONNECTED = 'disconnected'
PANEL_ERROR = 'error'

# Payment methods
METHOD_CARD = 'card_to_card'
METHOD_CRYPTO = 'crypto'
METHOD_GATEWAY = 'hosted_gateway'
PAYMENT_METHOD_CHOICES = (METHOD_CARD, METHOD_CRYPTO, METHOD_GATEWAY)

# Payment statuses
PAYMENT_PENDING = 'pending'
PAYMENT_COMPLETED = 'completed'
PAYMENT_FAILED = 'failed'
PAYMENT_CANCELLED = 'cancelled'
PAYMENT_REFUNDED = 'refunded'

# Subscription statuses
SUB_ACTIVE = 'active'
SUB_SUSPENDED = 'suspended'
SUB_EXPIRED = 'expired'


# User model
class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, unique=True, nullable=False)
    username = Column(String)
    created_at = Column(DateTime, default=utcnow)


# Panel model
class Panel(Base):
    __tablename__ = 'panels'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    admin_username = Column(String, nullable=False)
    admin_credential = Column(String, nullable=False)
    connectivity_status = Column(String, nullable=False, default=PANEL_DISCONNECTED)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    plans = relationship("Plan", back_populates="panel")

    def to_dict(self):
        # admin_credential is write-only
        return {
            'id': self.id,
            'name': self.name,
            'base_url': self.base_url,
            'admin_username': self.admin_username,
            'connectivity_status': self.connectivity_status,
        }

    def __repr__(self):
        return f"<Panel {self.id} {self.name} ({self.connectivity_status})>"


# Plan model
class Plan(Base):
    __tablename__ = 'plans'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    panel_id = Column(Integer, ForeignKey('panels.id'), nullable=False)
    data_limit_gb = Column(Float, nullable=False)
    duration_days = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    max_connections = Column(Integer, nullable=False, default=1)
    visible = Column(Boolean, nullable=False, default=True)
    features = Column(JSON, nullable=False, default=list)
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    panel = relationship("Panel", back_populates="plans")

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'panel_id': self.panel_id,
            'data_limit_gb': self.data_limit_gb,
            'duration_days': self.duration_days,
            'price': self.price,
            'max_connections': self.max_connections,
            'visible': self.visible,
            'features': list(self.features or []),
            'description': self.description,
        }


# Payment model
class Payment(Base):
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey('plans.id'), nullable=False)
    amount = Column(Float, nullable=False)
    method = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PAYMENT_PENDING, index=True)
    transaction_reference = Column(String)
    gateway_authority = Column(String, unique=True)
    gateway_metadata = Column(JSON, nullable=False, default=dict)
    refund_reason = Column(Text)
    consumed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'plan_id': self.plan_id,
            'amount': self.amount,
            'method': self.method,
            'status': self.status,
            'transaction_reference': self.transaction_reference,
            'gateway_authority': self.gateway_authority,
            'gateway_metadata': dict(self.gateway_metadata or {}),
            'created_at': self.created_at,
        }


# Subscription model
class Subscription(Base):
    __tablename__ = 'subscriptions'
    __table_args__ = (
        UniqueConstraint('panel_id', 'remote_username', name='uq_subscription_remote_account'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey('plans.id'), nullable=False)
    panel_id = Column(Integer, ForeignKey('panels.id'), nullable=False)
    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=False, unique=True)
    remote_username = Column(String, nullable=False)
    remote_credential = Column(String)
    data_limit_gb = Column(Float, nullable=False)
    used_data_gb = Column(Float, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False, index=True)
    status = Column(String, nullable=False, default=SUB_ACTIVE, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    plan = relationship("Plan")
    panel = relationship("Panel")

    @property
    def remaining_data_gb(self):
        return max(0.0, self.data_limit_gb - self.used_data_gb)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'plan_id': self.plan_id,
            'panel_id': self.panel_id,
            'payment_id': self.payment_id,
            'remote_username': self.remote_username,
            'data_limit_gb': self.data_limit_gb,
            'used_data_gb': self.used_data_gb,
            'remaining_data_gb': self.remaining_data_gb,
            'expires_at': self.expires_at,
            'status': self.status,
        }


# ConversationSession model
class ConversationSession(Base):
    __tablename__ = 'conversation_sessions'

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    state = Column(String, nullable=False, default='idle')
    selected_plan_id = Column(Integer)
    pending_payment_id = Column(Integer)
    scratch = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# Remote accounts left behind after a failed remote delete
class RemoteCleanup(Base):
    __tablename__ = 'remote_cleanups'

    id = Column(Integer, primary_key=True, autoincrement=True)
    panel_id = Column(Integer, nullable=False)
    username = Column(String, nullable=False)
    reason = Column(Text)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)


# SystemLog model
class SystemLog(Base):
    __tablename__ = 'system_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    level = Column(String)
    module = Column(String)
    message = Column(String)
    details = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class Database:
    def __init__(self, db_url):
        if db_url in ('sqlite://', 'sqlite:///:memory:'):
            # one shared connection so every session sees the same in-memory db
            self.engine = create_engine(
                db_url,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool
            )
        else:
            self.engine = create_engine(db_url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def session_scope(self):
        """Transactional scope: commit on success, rollback on any error"""
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # User methods
    def get_or_create_user(self, telegram_id, username=None):
        with self.session_scope() as session:
            user = session.query(User).filter_by(telegram_id=telegram_id).first()
            if user:
                if username and user.username != username:
                    user.username = username
                return user
            user = User(telegram_id=telegram_id, username=username)
            session.add(user)
            session.flush()
            logger.info(f"New user created: {telegram_id} ({username})")
            return user

    def get_user(self, telegram_id):
        with self.session_scope() as session:
            return session.query(User).filter_by(telegram_id=telegram_id).first()

    def count_users(self, since=None):
        with self.session_scope() as session:
            query = session.query(User)
            if since is not None:
                query = query.filter(User.created_at >= since)
            return query.count()

    # Logging methods
    def log_system(self, level, module, message, details=None):
        try:
            with self.session_scope() as session:
                session.add(SystemLog(
                    level=level,
                    module=module,
                    message=message,
                    details=json.dumps(details, default=str) if details else None
                ))
        except Exception as e:
            # audit rows must never break the operation being audited
            logger.error(f"Error logging system event: {e}")

    def recent_logs(self, limit=50):
        with self.session_scope() as session:
            return session.query(SystemLog).order_by(SystemLog.id.desc()).limit(limit).all()

    def purge_logs(self, before):
        with self.session_scope() as session:
            return session.query(SystemLog).filter(
                SystemLog.created_at < before
            ).delete(synchronize_session=False)
