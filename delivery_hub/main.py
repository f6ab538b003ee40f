from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from delivery_hub.api.v1.router import router as v1_router
from delivery_hub.core.errors import PipelineError
from delivery_hub.core.telemetry import setup_telemetry
from delivery_hub.schemas.coverage import ErrorResponse

app = FastAPI(title="Delivery Coverage Hub API", version="0.1.0")

setup_telemetry(app)
app.include_router(v1_router)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    body = ErrorResponse(code=exc.code, message=exc.message, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())
