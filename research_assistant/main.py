from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from research_assistant.api.routes import research
from research_assistant.config import settings
from research_assistant.research.errors import ResearchError
from research_assistant.services.container import build_container
from research_assistant.services.logger import logger

HTTP_ERROR_CODES = {400: "invalid_request", 401: "unauthorized", 404: "not_found"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests may install their own container before startup.
    if getattr(app.state, "container", None) is None:
        app.state.container = build_container(settings)
    await app.state.container.startup()
    yield
    await app.state.container.shutdown()


app = FastAPI(
    title="Multi-API Research Assistant",
    description="Research orchestration across OpenAI deep research and Gemini",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("x-request-id") or uuid4().hex
    response = await call_next(request)
    response.headers["X-Request-Id"] = request.state.request_id
    return response


def _error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    headers = {"X-Request-Id": request_id} if request_id else None
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message, "request_id": request_id},
        headers=headers,
    )


@app.exception_handler(ResearchError)
async def research_error_handler(request: Request, exc: ResearchError):
    return _error_response(request, exc.http_status, exc.code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    return _error_response(request, exc.status_code, code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
    return _error_response(request, 400, "invalid_request", message)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(
        f"Unhandled error on {request.method} {request.url.path} "
        f"(request_id={getattr(request.state, 'request_id', None)})",
        exc_info=exc,
    )
    return _error_response(request, 500, "internal_error", "Internal server error")


# Routes
app.include_router(research.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "research-assistant"}
