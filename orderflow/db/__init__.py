from orderflow.db.base_class import Base  # noqa: F401
