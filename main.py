"""
RecipeShare API - FastAPI front for rate-limited recipe mutations.
"""

import math
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, get_settings
from image_validation import ImageValidationError, build_image_rows
from rate_limiter import (
    Decision,
    RateLimitStore,
    build_default_registry,
    get_client_ip,
)
from security_logging import log_security_event
from submissions import CommentInput, RecipeInput, comment_row, like_row, recipe_row


SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-XSS-Protection": "1; mode=block",
}
DEMO_HEADERS = {
    "X-Demo-Mode": "true",
    "X-Rate-Limit-Info": "This is a demo with restricted usage",
}


def rate_limit(action: str) -> Callable[[Request, Response], Decision]:
    """
    Build a dependency that enforces the named limiter for the caller.

    Rejected calls become HTTP 429 with Retry-After and X-RateLimit-* headers.
    """

    def guard(request: Request, response: Response) -> Decision:
        limiter = request.app.state.rate_limiters[action]
        decision = limiter.check(request)

        if not decision.admitted:
            now = limiter.store.clock()
            retry_after = max(1, math.ceil((decision.reset_time - now) / 1000))
            log_security_event(
                "rate_limit_triggered",
                ip=get_client_ip(request),
                action=action,
                extra={"endpoint": request.url.path, "retry_after": retry_after},
            )
            raise HTTPException(
                status_code=429,
                detail={
                    "error": decision.reason,
                    "message": "Too many requests. Please wait before trying again.",
                    "retryAfter": retry_after,
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limiter.max_requests),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(decision.reset_time),
                },
            )

        response.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return decision

    return guard


def require_user(action: str) -> Callable[[Optional[str]], str]:
    """Resolve the signed-in user id forwarded by the auth provider."""

    def dependency(x_user_id: Optional[str] = Header(default=None)) -> str:
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(status_code=401, detail=f"You must be logged in to {action}")
        return x_user_id.strip()

    return dependency


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RateLimitStore] = None,
) -> FastAPI:
    """
    Build the API with its own limiter store.

    The store's reclamation thread runs from startup to shutdown.
    """
    if settings is None:
        settings = get_settings()
    if store is None:
        store = RateLimitStore(sweep_interval=settings.rate_limit_sweep_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.start()
        try:
            yield
        finally:
            store.stop()

    app = FastAPI(
        lifespan=lifespan,
        title="RecipeShare API",
        description="Rate-limited recipe, like, comment and image endpoints",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.rate_limit_store = store
    app.state.rate_limiters = build_default_registry(store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        if settings.demo_mode:
            response.headers.update(DEMO_HEADERS)
        return response

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Health check endpoint for monitoring and deployment verification."""
        return {"status": "healthy", "rate_limit_sweep": store.running}

    @app.post(
        "/api/recipes",
        status_code=201,
        dependencies=[Depends(rate_limit("recipe-create"))],
    )
    def create_recipe(
        request: Request,
        recipe: RecipeInput,
        user_id: str = Depends(require_user("create recipes")),
    ) -> Dict[str, Any]:
        """Validate a new recipe and return the row to insert."""
        row = recipe_row(recipe, user_id)
        log_security_event(
            "recipe_submitted",
            ip=get_client_ip(request),
            action="recipe-create",
            extra={"user_id": user_id, "ingredient_count": len(row["ingredients"])},
        )
        return {"success": True, "recipe": row}

    @app.put(
        "/api/recipes/{recipe_id}",
        dependencies=[Depends(rate_limit("recipe-update"))],
    )
    def update_recipe(
        request: Request,
        recipe_id: str,
        recipe: RecipeInput,
        user_id: str = Depends(require_user("update recipes")),
    ) -> Dict[str, Any]:
        row = recipe_row(recipe, user_id)
        log_security_event(
            "recipe_updated",
            ip=get_client_ip(request),
            action="recipe-update",
            extra={"user_id": user_id, "recipe_id": recipe_id},
        )
        return {"success": True, "recipe_id": recipe_id, "recipe": row}

    @app.post(
        "/api/recipes/{recipe_id}/like",
        dependencies=[Depends(rate_limit("like"))],
    )
    def like_recipe(
        request: Request,
        recipe_id: str,
        user_id: str = Depends(require_user("like recipes")),
    ) -> Dict[str, Any]:
        log_security_event(
            "recipe_liked",
            ip=get_client_ip(request),
            action="like",
            extra={"user_id": user_id, "recipe_id": recipe_id},
        )
        return {"success": True, "like": like_row(recipe_id, user_id)}

    @app.post(
        "/api/recipes/{recipe_id}/comments",
        status_code=201,
        dependencies=[Depends(rate_limit("comment"))],
    )
    def create_comment(
        request: Request,
        recipe_id: str,
        comment: CommentInput,
        user_id: str = Depends(require_user("comment")),
    ) -> Dict[str, Any]:
        log_security_event(
            "comment_submitted",
            ip=get_client_ip(request),
            action="comment",
            extra={"user_id": user_id, "recipe_id": recipe_id, "length": len(comment.content)},
        )
        return {"success": True, "comment": comment_row(recipe_id, comment, user_id)}

    @app.post(
        "/api/recipes/{recipe_id}/images",
        dependencies=[Depends(rate_limit("image-upload"))],
    )
    def upload_images(
        request: Request,
        recipe_id: str,
        files: Optional[List[UploadFile]] = File(default=None),
        user_id: str = Depends(require_user("upload images")),
    ) -> Dict[str, Any]:
        """
        Validate recipe images and return their metadata rows.

        The image-upload rate limit is checked before any image is inspected.
        """
        ip = get_client_ip(request)
        try:
            rows = build_image_rows(
                recipe_id,
                files or [],
                max_size=settings.max_image_size_bytes,
                max_images=settings.max_images_per_upload,
            )
        except ImageValidationError as e:
            log_security_event(
                "image_rejected",
                ip=ip,
                action="image-upload",
                extra={"recipe_id": recipe_id, "reason": str(e)},
            )
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Image upload error: {str(e)}")

        log_security_event(
            "image_uploaded",
            ip=ip,
            action="image-upload",
            extra={"user_id": user_id, "recipe_id": recipe_id, "count": len(rows)},
        )
        return {"success": True, "images": rows}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
