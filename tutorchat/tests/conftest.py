import os
import tempfile

# settings are read at import time; keep test runs away from the working tree
_scratch = tempfile.mkdtemp(prefix="tutorchat-tests-")
os.environ.setdefault("TUTORCHAT_SQLITE_DB_PATH", os.path.join(_scratch, "tutorchat.db"))
os.environ.setdefault("TUTORCHAT_LOG_DIR", os.path.join(_scratch, "logs"))
os.environ.setdefault("TUTORCHAT_GEMINI_API_KEY", "test-key")
os.environ.setdefault("TUTORCHAT_JWT_SECRET", "test-secret")
