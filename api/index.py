import sys
import os
from pathlib import Path

# Serverless entry point: the host imports `app` from here.
current_dir = Path(__file__).resolve().parent
project_root = current_dir.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("LOG_LEVEL", "INFO")

from gemini_proxy.main import app

__all__ = ["app"]
