"""
main.py
Main entry point of application that initializes the FastAPI app and includes all endpoints
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from routers import subscriptions, webhooks
from utils.errors import ApiError
from config import get_logger

logger = get_logger(__name__)

# Initialize FastAPI app and router for endpoints
app = FastAPI(title="IdeaSpark Subscriptions")

# Include routers for endpoints in FastAPI app
app.include_router(subscriptions.router)
app.include_router(webhooks.router)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


# Run FastAPI on local host
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
