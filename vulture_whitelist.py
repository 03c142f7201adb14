# Vulture whitelist for intentionally unused names
# These are required by framework signatures and cannot be removed

# SQLAlchemy event listeners require specific signatures
_._cursor  # unused variable (SQLAlchemy event listener)
_._parameters  # unused variable (SQLAlchemy event listener)
_._executemany  # unused variable (SQLAlchemy event listener)

# ARQ worker settings and context parameter are read by the arq runner
_.ctx  # unused variable (ARQ worker context)
_.on_startup  # unused attribute (ARQ WorkerSettings)
_.on_shutdown  # unused attribute (ARQ WorkerSettings)
_.keep_result  # unused attribute (ARQ WorkerSettings)

# Pydantic config switches
_.from_attributes  # unused variable (Pydantic model Config)

# Model imports are required for SQLAlchemy table registration
_.models  # unused import (SQLAlchemy model registration)
_.models_calendar_sync  # unused import (SQLAlchemy model registration)
