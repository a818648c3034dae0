import os

import uvicorn

from cottmv.gateway import create_app
from cottmv.gateway.config import Settings
from cottmv.gateway.logging_config import configure_logging

if __name__ == "__main__":
    settings = Settings()  # type: ignore
    configure_logging(settings.log_dir)
    app = create_app(settings)
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")), log_config=None)
