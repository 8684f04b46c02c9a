import os
import tempfile

# Settings are read at import time; point them at a throwaway DB and keep
# background connections off before any careflow module is imported.
_DB_PATH = os.path.join(tempfile.gettempdir(), "careflow_test.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{_DB_PATH}")
os.environ.setdefault("AUTO_CREATE_DB", "true")
os.environ.setdefault("AUTO_RUN_MIGRATIONS", "false")
os.environ.setdefault("ENABLE_CHANGE_PUBLISHER", "false")
os.environ.setdefault("CAREFLOW_ENV", "dev")
