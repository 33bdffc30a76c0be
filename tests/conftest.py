import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `edusite` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_process_state():
	# Rate limiter buckets and cached responses are process-wide; start each test clean
	import edusite.main as main
	from edusite import cache
	main._RATE_LIMIT_STORE.clear()
	cache.init_caches()
	yield
