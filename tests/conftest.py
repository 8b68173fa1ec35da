import os
import sys
from pathlib import Path

os.environ.setdefault("RAIL_DRY_RUN", "true")
os.environ.setdefault("BTCPAY_BASE_URI", "http://btcpay.test/")
os.environ.setdefault("LND_REST_URL", "https://lnd.test:8080")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
