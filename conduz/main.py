import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.db import create_all_tables
from .core.init_data import init_data
from .routers import drivers, financing, imports, referrals, settlements
from .routers import settings as settings_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Iniciando la aplicación...")
    create_all_tables()
    init_data()
    yield
    logger.info("Cerrando la aplicación...")

app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Liquidación semanal de conductores: importación de plataformas, cálculo y pagos",
    version=settings.APP_VERSION
)

# Configuración CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_CREDENTIALS,
    allow_methods=settings.CORS_METHODS,
    allow_headers=settings.CORS_HEADERS,
)

# Agregar routers
app.include_router(drivers.router)
app.include_router(imports.router)
app.include_router(settlements.router)
app.include_router(financing.router)
app.include_router(referrals.router)
app.include_router(settings_router.router)
