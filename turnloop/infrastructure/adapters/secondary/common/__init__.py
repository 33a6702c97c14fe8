from turnloop.infrastructure.adapters.secondary.common.base_repository import (
    BaseRepository,
    as_utc,
    handle_db_errors,
)

__all__ = ["BaseRepository", "as_utc", "handle_db_errors"]
