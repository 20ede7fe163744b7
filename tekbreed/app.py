"""
FastAPI application entry point for the TekBreed backend.
This file initializes the FastAPI app and registers all routes.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from tekbreed.api.admin_routes import admin_router
from tekbreed.api.chat_routes import chat_router, documents_router
from tekbreed.api.content_routes import content_router
from tekbreed.api.email_routes import email_router
from tekbreed.api.profile_routes import profile_router
from tekbreed.api.subscription_routes import subscription_router
from tekbreed.api.websocket_routes import websocket_router
from tekbreed.config import Config
from tekbreed.services.scheduler import start_scheduler, stop_scheduler
import atexit


def create_app():
    """Create and configure the FastAPI application"""
    # Validate configuration at startup
    Config.validate()

    app = FastAPI(
        title="TekBreed API",
        description="Content interactions, subscriptions, learning assistant and housekeeping for TekBreed",
        version="1.0.0"
    )

    allowed_origins = Config.ALLOWED_ORIGINS if Config.ENVIRONMENT == "production" else [
        "http://localhost:5173",      # Vite dev server (default)
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],  # Allows Authorization header for JWT tokens
    )

    print(f"✓ CORS configured for origins: {allowed_origins}")

    app.include_router(content_router)
    app.include_router(profile_router)
    app.include_router(subscription_router)
    app.include_router(email_router)
    app.include_router(chat_router)
    app.include_router(documents_router)
    app.include_router(admin_router)
    app.include_router(websocket_router)

    @app.get('/health', tags=['health'])
    async def health_check():
        return {"status": "ok", "message": "TekBreed API is running"}

    if Config.SCHEDULER_ENABLED:
        start_scheduler()
    else:
        print("⚠ Cron scheduler disabled (set SCHEDULER_ENABLED=true to enable)")

    print("✅ All routes registered successfully")
    return app


def cleanup_on_exit():
    """Cleanup function to run when the process exits"""
    stop_scheduler()


# Create app instance
app = create_app()

# Register cleanup on exit
atexit.register(cleanup_on_exit)

if __name__ == '__main__':
    import uvicorn

    print("\n" + "="*70)
    print("Starting FastAPI Server...")
    print(f"Environment: {Config.ENVIRONMENT}")
    print(f"Debug Mode: {Config.DEBUG}")
    print(f"Port: {Config.PORT}")
    print(f"Scheduler: {'Enabled' if Config.SCHEDULER_ENABLED else 'Disabled'}")
    print("="*70 + "\n")

    try:
        uvicorn.run(
            "tekbreed.app:app",
            host="0.0.0.0",
            port=Config.PORT,
            reload=Config.DEBUG
        )
    finally:
        cleanup_on_exit()
