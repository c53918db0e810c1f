"""Domain modules package."""

from app.modules.audit import models as audit_models  # noqa: F401
from app.modules.identity import models as identity_models  # noqa: F401
from app.modules.payments import models as payments_models  # noqa: F401
from app.modules.programs import models as programs_models  # noqa: F401
