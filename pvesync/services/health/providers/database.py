from sqlalchemy import text

from pvesync.services.health.base import HealthCheckProvider


class DatabaseHealthCheck(HealthCheckProvider):
    name = "State Store"
    category = "database"

    def __init__(self, db):
        self.db = db

    def check(self):
        self.db.session.execute(text('SELECT 1'))
        return {'dialect': self.db.engine.dialect.name}
