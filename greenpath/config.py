from pydantic import BaseModel
from functools import lru_cache
from dotenv import load_dotenv
import os

load_dotenv()

class Settings(BaseModel):
    api_base_url: str = os.getenv("GREENPATH_API_URL", "http://localhost:5000")
    preferences_dir: str = os.getenv("GREENPATH_PREFERENCES_DIR", os.path.join(os.path.expanduser("~"), ".greenpath"))
    request_timeout: float = float(os.getenv("GREENPATH_REQUEST_TIMEOUT", "15"))
    # delay between a "complete" frame and the follow-up fetch of the result
    completion_grace_seconds: float = float(os.getenv("GREENPATH_COMPLETION_GRACE", "1.0"))
    log_level: str = os.getenv("GREENPATH_LOG_LEVEL", "INFO")

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
