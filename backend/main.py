import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from backend.core import config
from backend.core.errors import AppointmentError, ErrorCode
from backend.database import Base, engine, ensure_appointment_schema, ensure_calendar_schema
from backend.models import appointment, audit, calendar, notification, user  # noqa: F401
from backend.routes import appointment_routes, calendar_routes

logging.basicConfig(level=logging.DEBUG if config.APP_DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

config.validate_runtime_config()

app = FastAPI(title='Zenith Appointments API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.exception_handler(AppointmentError)
async def appointment_error_handler(request: Request, exc: AppointmentError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.detail)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first_error = exc.errors()[0] if exc.errors() else {}
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            'error': first_error.get('msg', 'Invalid payload'),
            'code': ErrorCode.INVALID_PAYLOAD.value,
        },
    )


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_appointment_schema()
        ensure_calendar_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.get('/')
def root():
    return {'status': 'Zenith Appointments API Running'}


app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(calendar_routes.router, prefix='/calendar')
