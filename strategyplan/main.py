import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from strategyplan/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from strategyplan.core.config import settings, validate_config  # noqa: E402
from strategyplan.core.database import create_all_tables, get_database_url  # noqa: E402
from strategyplan.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from strategyplan.core.logging import configure_logging  # noqa: E402
from strategyplan.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from strategyplan.api import billing, health  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("strategyplan")
    logger.info("Starting StrategyPlan billing service...")
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping StrategyPlan billing service...")


app = FastAPI(title="StrategyPlan - Billing", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router)
app.include_router(billing.router)
