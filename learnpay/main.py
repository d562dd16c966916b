import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from learnpay.config import settings
from learnpay.database import Base, engine
from learnpay.errors import HTTP_STATUS, PaymentError
from learnpay.logging_config import configure_logging, get_logger
from learnpay.routes import router

configure_logging(settings.log_level)
logger = get_logger("http")

app = FastAPI(title="Learnpay Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    status_code = HTTP_STATUS[exc.kind]
    logger.warning("request_failed", path=request.url.path, status_code=status_code,
                   kind=exc.kind.value, code=exc.code)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def run():
    uvicorn.run("learnpay.main:app", host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
