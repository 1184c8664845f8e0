import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Load variables from a local .env without overwriting exported ones.

    WHAT:
        Reads backend/.env (searched upward from the working directory) into
        os.environ for developer runs.
    WHY:
        Production exports DATABASE_URL/REDIS_URL directly; a stray .env must
        never shadow those.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("[ENV] No local .env file found")
