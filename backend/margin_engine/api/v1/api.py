from fastapi import APIRouter

from margin_engine.api.v1.endpoints import margin_risk

api_router = APIRouter()

# Health check endpoint for API
@api_router.get("/health")
def health_check():
    return {"status": "healthy"}

# Include all endpoint routers
api_router.include_router(margin_risk.router, prefix="/margin-risk", tags=["margin-risk"])
