WAREHOUSE_ALIAS = "warehouse"


class WarehouseRouter:
    """Keep every app table off the warehouse connection.

    The warehouse is queried with raw SQL only, so no model ever routes there
    and migrations never run against it.
    """

    def db_for_read(self, model, **hints):
        return None

    def db_for_write(self, model, **hints):
        return None

    def allow_migrate(self, db, app_label, model_name=None, **hints):
        if db == WAREHOUSE_ALIAS:
            return False
        return None
