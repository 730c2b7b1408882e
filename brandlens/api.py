from contextlib import asynccontextmanager
from typing import Any

import psycopg
import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .brands import ApprovalStatus, BrandFields, BrandRecord
from .configuration import Settings
from .db import create_pool
from .embeddings import has_usable_embedding
from .errors import (
    BrandNotFoundError,
    EmbeddingProviderError,
    EmbeddingRateLimitError,
    InvalidQueryError,
)
from .install import verify_embedding_model
from .services import Services, postgres_services

logger = structlog.get_logger()


class GenerateEmbeddingRequest(BaseModel):
    brandId: int | None = None


class UpdateEmbeddingsRequest(BaseModel):
    batchSize: int | None = Field(default=None, gt=0)


class SemanticSearchRequest(BaseModel):
    query: str | None = None


class ApproveRequest(BaseModel):
    status: ApprovalStatus = ApprovalStatus.approved


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": False, "error": message}
    )


def brand_payload(brand: BrandRecord) -> dict[str, Any]:
    payload = brand.model_dump(mode="json", exclude={"embedding"})
    payload["has_embedding"] = has_usable_embedding(brand.embedding)
    return payload


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(
    settings: Settings | None = None, services: Services | None = None
) -> FastAPI:
    """
    Creates the HTTP API. With `services` given, no database pool is opened,
    which is how tests run the app against in-memory stores.
    """
    settings = settings if settings is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        pool = create_pool(settings.db_url)
        await pool.open()
        try:
            async with pool.connection() as conn:
                await verify_embedding_model(
                    conn, settings.model, settings.embedding_dimensions
                )
            app.state.services = postgres_services(settings, pool)
            logger.info("brandlens api started", version=__version__)
            yield
        finally:
            await pool.close()

    app = FastAPI(title="brandlens", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError):
        return error_response(400, f"invalid request: {exc.errors()}")

    @app.exception_handler(psycopg.Error)
    async def database_error(request: Request, exc: psycopg.Error):
        await logger.aerror("database error", path=request.url.path, error=str(exc))
        return error_response(500, str(exc))

    @app.post("/generate-brand-embeddings")
    async def generate_brand_embeddings(
        body: GenerateEmbeddingRequest, services: Services = Depends(get_services)
    ):
        if body.brandId is None:
            return error_response(400, "Brand ID is required")
        try:
            embedding = await services.processor.embed_brand(body.brandId)
        except BrandNotFoundError as e:
            return error_response(404, str(e))
        except EmbeddingRateLimitError as e:
            return error_response(429, str(e))
        except EmbeddingProviderError as e:
            return error_response(400, str(e))
        return {
            "success": True,
            "message": "Embedding generated and stored successfully",
            "brandId": body.brandId,
            "embeddingLength": len(embedding),
        }

    @app.post("/update-embeddings")
    async def update_embeddings(
        body: UpdateEmbeddingsRequest | None = None,
        services: Services = Depends(get_services),
    ):
        batch_size = body.batchSize if body is not None else None
        try:
            summary = await services.processor.run(batch_size)
        except Exception as e:
            await logger.aerror("queue processing failed", error=str(e))
            return error_response(500, str(e))
        payload: dict[str, Any] = {"success": True, "results": summary.to_payload()}
        if summary.total == 0:
            payload["message"] = "No pending embeddings"
        return payload

    @app.post("/enqueue-missing")
    async def enqueue_missing(services: Services = Depends(get_services)):
        try:
            count = await services.processor.enqueue_missing()
        except Exception as e:
            await logger.aerror("backfill failed", error=str(e))
            return error_response(500, str(e))
        return {"success": True, "enqueued": count}

    @app.post("/semantic-search")
    async def semantic_search(
        body: SemanticSearchRequest, services: Services = Depends(get_services)
    ):
        try:
            results = await services.semantic.search(body.query or "")
        except InvalidQueryError as e:
            return error_response(400, str(e))
        except Exception as e:
            await logger.aerror("semantic search failed", error=str(e))
            return error_response(500, str(e))
        return {"results": [result.to_payload() for result in results]}

    @app.get("/brands/search")
    async def keyword_search(q: str = "", services: Services = Depends(get_services)):
        try:
            results = await services.keyword.search(q)
        except InvalidQueryError as e:
            return error_response(400, str(e))
        return {"results": [result.to_payload() for result in results]}

    @app.post("/brands", status_code=201)
    async def create_brand(
        fields: BrandFields, services: Services = Depends(get_services)
    ):
        brand = await services.store.insert_brand(fields)
        return brand_payload(brand)

    @app.get("/brands/{brand_id}")
    async def get_brand(brand_id: int, services: Services = Depends(get_services)):
        try:
            brand = await services.store.get_brand(brand_id)
        except BrandNotFoundError as e:
            return error_response(404, str(e))
        return brand_payload(brand)

    @app.put("/brands/{brand_id}")
    async def update_brand(
        brand_id: int, fields: BrandFields, services: Services = Depends(get_services)
    ):
        try:
            brand = await services.store.update_brand(brand_id, fields)
        except BrandNotFoundError as e:
            return error_response(404, str(e))
        return brand_payload(brand)

    @app.post("/brands/{brand_id}/approve")
    async def approve_brand(
        brand_id: int,
        body: ApproveRequest | None = None,
        services: Services = Depends(get_services),
    ):
        status = body.status if body is not None else ApprovalStatus.approved
        try:
            await services.store.approve_brand(brand_id, status)
        except BrandNotFoundError as e:
            return error_response(404, str(e))
        return {"success": True, "brandId": brand_id, "approval_status": status.value}

    return app
