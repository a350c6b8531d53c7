import io
import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from delivery_watch.common.json_logger import JsonLogger  # noqa: E402


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> JsonLogger:
    json_logger = JsonLogger(run_id="test-run", stream=log_stream, log_file_path=None)
    yield json_logger
    json_logger.close()


@pytest.fixture
def events(log_stream: io.StringIO):
    def _read() -> list[dict]:
        return [json.loads(line) for line in log_stream.getvalue().splitlines() if line.strip()]

    return _read
