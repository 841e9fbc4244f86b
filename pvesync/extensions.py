from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS

# Extension instances
# Note: binding to the app (init_app) happens in pvesync/__init__.py
db = SQLAlchemy()
migrate = Migrate()
cors = CORS()

# Imported after db: the models (pulled in by both) depend on it
from pvesync.proxmox import ProxmoxService  # noqa: E402
from pvesync.sync import SyncEngine  # noqa: E402

proxmox_client = ProxmoxService()  # Resource Client
sync_engine = SyncEngine()
