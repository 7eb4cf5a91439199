"""FastAPI bootstrap wiring the settlement service and its rebalance loop."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from settlement import api
from settlement.config import REBALANCE_ENABLED, setup_logging
from settlement.service import SettlementService, build_service


def create_app(service: Optional[SettlementService] = None, run_trigger: bool = REBALANCE_ENABLED) -> FastAPI:
    service = service or build_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_trigger:
            service.start()
        try:
            yield
        finally:
            if run_trigger:
                service.stop()
            service.close()

    app = FastAPI(title="Settlement API", version="0.1.0", lifespan=lifespan)

    api.register_service(service)
    api.attach_to_app(app)

    return app


app = create_app()


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    setup_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
