import logging
import os
import sys

LOG_DIR = os.getenv("SIGNFLOW_LOG_DIR", "log")
os.makedirs(LOG_DIR, exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(os.path.join(LOG_DIR, 'server.log'), encoding='utf-8')
    ]
)

logger = logging.getLogger('signflow')
