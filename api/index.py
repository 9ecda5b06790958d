import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import app  # noqa: E402

# Serverless runtimes do not keep the lifespan dispatch loop alive;
# schedule POST /api/dispatch/run from the platform cron instead.
app.root_path = "/api"

handler = Mangum(app, lifespan="off")
