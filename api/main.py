import os

from fastapi import FastAPI

try:
    from _version import __configuration__, __version__
except ImportError:
    __version__, __configuration__ = "local", "Debug"

app = FastAPI(
    title="Minimal API",
    version=__version__,
    docs_url="/swagger/index.html",
    openapi_url="/swagger/v1/swagger.json",
)


@app.get("/")
def root():
    return {"message": "Hello World!"}


@app.get("/health")
def health():
    return {
        "status": "healthy",
        "version": __version__,
        "configuration": __configuration__,
        "environment": os.environ.get("APP_ENVIRONMENT", "Production"),
    }
