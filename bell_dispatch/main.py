import logging
import sys

import uvicorn

from bell_dispatch.core.config import settings
from bell_dispatch.reminders.service import create_app

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

app = create_app()
logger.info("%s ops service ready (environment=%s)", settings.PROJECT_NAME, settings.ENVIRONMENT.value)


if __name__ == "__main__":
    uvicorn.run("bell_dispatch.main:app", host="0.0.0.0", port=8000)
