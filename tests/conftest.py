import os
import tempfile

# backend.app reads its configuration at import time
os.environ["USE_DYNAMODB"] = "false"
os.environ["USE_SNS"] = "false"
os.environ["USE_S3_STORAGE"] = "false"
os.environ["APP_TIMEZONE"] = "UTC"
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="tracker-data-"))
