from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from dotenv import load_dotenv  # 需要安装 python-dotenv
import logging

from bookstore.router import admin_rt, order_rt, payment_rt, webhook_rt
from bookstore.utils.database import init_db
from bookstore.utils.errors import AppError
from bookstore.utils.logger import setup_logging

# 加载环境变量
load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 启动时初始化日志和数据表
    setup_logging()
    init_db()
    logger.info("Bookstore API started")
    yield
    logger.info("Bookstore API stopped")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(title="Bookstore", lifespan=lifespan if use_lifespan else None)

    # 配置CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"Request failed | path：{request.url.path} | error：{str(exc)}")
        else:
            logger.info(f"Request rejected | path：{request.url.path} | code：{exc.code} | message：{exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # 注册路由
    app.include_router(order_rt.router)
    app.include_router(payment_rt.router)
    app.include_router(webhook_rt.router)
    app.include_router(admin_rt.router)
    return app


app = create_app()

if __name__ == '__main__':
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
