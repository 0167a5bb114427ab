# Main Router - assessment_engine/api/v1/routes/router.py
from fastapi import APIRouter
from assessment_engine.api.v1.routes.assessments.assessments import router as assessments_router

router = APIRouter()

router.include_router(assessments_router)
