import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quotagate.errors import DispatchError, GateError
from quotagate.routes import api

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Quota Gate", description="Quota-weighted admission and dispatch for media processing jobs")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For production, restrict to your domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(api.router, prefix="/api")


@app.exception_handler(GateError)
async def gate_error_handler(request: Request, exc: GateError):
    """Render admission and dispatch errors as {detail, code}"""
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, DispatchError):
        content["jobId"] = exc.job_id
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring"""
    return {"status": "healthy"}
