from mangum import Mangum
from metrics_api.main import app

# Lifespan "auto" runs startup/shutdown so the cache sweeper is started and cancelled with the handler
lambda_handler = Mangum(app, lifespan="auto", api_gateway_base_path="/default")
