class DatabaseError(RuntimeError):
    """Any failure of the active storage backend."""


class UnsupportedStatementError(DatabaseError):
    """Statement shape the key/value SQL interpreter cannot evaluate."""
