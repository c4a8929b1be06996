from membersync.database.session import Database, normalize_database_url

__all__ = ["Database", "normalize_database_url"]
