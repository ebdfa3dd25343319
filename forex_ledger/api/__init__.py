"""
Forex Back-Office API Application Factory
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from ..config import get_config
from ..system import BackOffice, get_back_office
from .transactions import router as transactions_router
from .exchange import router as exchange_router
from .accounts import router as accounts_router
from .expenses import router as expenses_router
from .settlements import router as settlements_router
from .admin import router as admin_router


def create_app(back_office: Optional[BackOffice] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Forex Back-Office API",
        description="Cash ledger, exchange desk and transaction workflow engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.back_office = back_office or get_back_office()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(exchange_router, prefix="/exchange", tags=["Exchange Desk"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Cash Accounts"])
    app.include_router(expenses_router, prefix="/expenses", tags=["Expenses"])
    app.include_router(settlements_router, prefix="/settlements", tags=["Settlements"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "forex_ledger_api",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Forex Back-Office API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "transactions": "/transactions",
                "exchange": "/exchange",
                "accounts": "/accounts",
                "expenses": "/expenses",
                "settlements": "/settlements",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "forex_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
