import logging
import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from taskwallet.api import create_app
from taskwallet.config import Settings

settings = Settings.from_env()
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=settings.log_level,
)

app = create_app(settings=settings)

handler = Mangum(app)
