from fastapi import APIRouter

from app.api import borrows, classes, deficiencies, equipment

api_router = APIRouter()

# 註冊各模組的路由
api_router.include_router(borrows.router)
api_router.include_router(equipment.router)
api_router.include_router(deficiencies.router)
api_router.include_router(classes.router)
