"""Central registry for SQLAlchemy models.

Importing this module loads every billing ORM class so metadata-driven tooling
(``create_all`` in tests, Alembic autogenerate) sees the full schema.
"""

from app.domain.billing import db_models as billing_db_models  # noqa: F401
from app.domain.ops import db_models as ops_db_models  # noqa: F401
