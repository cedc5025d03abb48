from fastapi import APIRouter

from api.v1.checkout import router as checkout_router

router = APIRouter()

# Include v1 routers
router.include_router(checkout_router, prefix="/v1")
