# backend/trustgate/db/base.py

# Import every model so Base.metadata knows all tables before create_all runs.
from trustgate.db.base_class import Base  # noqa: F401
from trustgate.db.models.audit_log import AuditLog, SecurityLog  # noqa: F401
from trustgate.db.models.ip_blacklist import BlacklistEntry  # noqa: F401
from trustgate.db.models.two_factor import TwoFactorCredential, UserSecuritySettings  # noqa: F401
from trustgate.db.models.user import User  # noqa: F401
