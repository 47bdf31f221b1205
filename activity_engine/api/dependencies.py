from activity_engine.core.services.database import get_db_service as _get_db_service


def get_db_service():
    # Delegate to the core database singleton so tests and the API share the
    # same DatabaseService instance regardless of import path.
    return _get_db_service()
