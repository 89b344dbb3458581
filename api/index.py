from mangum import Mangum

from staking.api import app

handler = Mangum(app, api_gateway_base_path="/api")
