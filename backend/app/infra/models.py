"""Central registry for SQLAlchemy models with string-based relationships.

Importing this module loads all ORM classes that may be referenced by string to
avoid mapper configuration errors when individual models are imported in
isolation.
"""

from app.domain.saas import db_models as saas_db_models  # noqa: F401
from app.domain.tours import db_models as tour_db_models  # noqa: F401
from app.domain.pickups import db_models as pickup_db_models  # noqa: F401
from app.domain.guides import db_models as guide_db_models  # noqa: F401
from app.domain.bookings import db_models as booking_db_models  # noqa: F401
from app.domain.dispatch import db_models as dispatch_db_models  # noqa: F401
from app.domain.outbox import db_models as outbox_db_models  # noqa: F401
