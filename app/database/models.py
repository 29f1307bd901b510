"""
Import every model module so Base.metadata knows all tables
(used by app start-up, Alembic autogenerate and the test suite).
"""
import app.modules.auth.models  # noqa: F401
import app.modules.stores.models  # noqa: F401
import app.modules.products.models  # noqa: F401
import app.modules.inventory.models  # noqa: F401
import app.modules.audit.models  # noqa: F401
import app.modules.approvals.models  # noqa: F401
import app.modules.transfers.models  # noqa: F401

from app.database.database import Base

metadata = Base.metadata
