import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import app

# Serverless entry point; routes are served under /api
handler = Mangum(app, lifespan="auto", api_gateway_base_path="/api")
