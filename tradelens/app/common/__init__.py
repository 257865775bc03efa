# tradelens.app.common package
from tradelens.app.common.config import Config, get_config
from tradelens.app.common.db import get_db, init_db

__all__ = ["Config", "get_config", "get_db", "init_db"]
