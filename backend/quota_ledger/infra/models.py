"""Central registry for SQLAlchemy models.

Importing this module loads every ORM class so that foreign keys and
``Base.metadata.create_all`` see the full schema regardless of which domain
module was imported first.
"""

from quota_ledger.domain.organizations import db_models as organization_db_models  # noqa: F401
from quota_ledger.domain.storage_quota import db_models as storage_quota_db_models  # noqa: F401
from quota_ledger.domain.stored_files import db_models as stored_file_db_models  # noqa: F401
