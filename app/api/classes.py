from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_borrower_user, get_staff_user
from app.core.auth import get_actor
from app.crud.classes import class_to_dict
from app.crud.classes import course as crud_class
from app.database import get_db
from app.models.users import User
from app.schemas.classes import ClassCreate, ClassList, ClassResponse, EnrollmentCreate, EnrollmentResult
from app.services.logging import logging_service

router = APIRouter(prefix="/classes", tags=["classes"])

DUPLICATE_CLASS = HTTPException(
    status_code=status.HTTP_409_CONFLICT,
    detail={"success": False, "error": {"code": "DUPLICATE_RESOURCE", "message": "相同學年度的課程班別已存在"}},
)


@router.get("", response_model=ClassList)
async def get_classes(
    include_inactive: bool = Query(False, description="是否包含已停用的課程"),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    獲取課程列表，學生只會看到自己修習的課程
    """
    actor = await get_actor(db, current_user)
    classes = await crud_class.get_list(db, actor=actor, include_inactive=include_inactive)
    return {"success": True, "data": {"classes": [class_to_dict(c) for c in classes]}}


@router.post("", response_model=ClassResponse)
async def create_class(
    request: Request,
    class_in: ClassCreate,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    建立課程並指定授課教師
    """
    ip_address = await logging_service.get_request_ip(request)
    course = await crud_class.create(db, obj_in=class_in)
    if not course:
        await logging_service.warning(
            db,
            component="classes",
            message=f"建立課程失敗：{class_in.courseCode}-{class_in.section} 已存在",
            details=class_in.model_dump(),
            user_id=current_user.id,
            ip_address=ip_address,
        )
        raise DUPLICATE_CLASS

    await logging_service.audit(
        db,
        component="classes",
        action="create",
        user_id=current_user.id,
        resource_type="class",
        resource_id=course.id,
        details={"courseCode": course.course_code, "section": course.section, "ficId": course.fic_id},
        ip_address=ip_address,
    )
    return {"success": True, "data": class_to_dict(course)}


@router.post("/{class_id}/enrollments", response_model=EnrollmentResult)
async def add_enrollments(
    request: Request,
    enrollment_in: EnrollmentCreate,
    class_id: str = Path(..., description="課程ID"),
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    批次將學生加入課程
    """
    course = await crud_class.get_detail(db, class_id)
    result = await crud_class.add_enrollments(db, db_obj=course, user_ids=enrollment_in.userIds)
    if result["added"]:
        await logging_service.audit(
            db,
            component="classes",
            action="enroll",
            user_id=current_user.id,
            resource_type="class",
            resource_id=class_id,
            details={"userIds": result["added"]},
            ip_address=await logging_service.get_request_ip(request),
        )
    return {"success": True, "data": {"classId": class_id, **result}}


@router.delete("/{class_id}/enrollments/{user_id}", response_model=ClassResponse)
async def remove_enrollment(
    request: Request,
    class_id: str = Path(..., description="課程ID"),
    user_id: str = Path(..., description="學生ID"),
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    將學生移出課程，既有的借用紀錄不受影響
    """
    course = await crud_class.get_detail(db, class_id)
    if not await crud_class.remove_enrollment(db, db_obj=course, user_id=user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"success": False, "error": {"code": "NOT_FOUND", "message": "該學生未修習此課程"}},
        )
    await logging_service.audit(
        db,
        component="classes",
        action="unenroll",
        user_id=current_user.id,
        resource_type="class",
        resource_id=class_id,
        details={"userId": user_id},
        ip_address=await logging_service.get_request_ip(request),
    )
    course = await crud_class.get_detail(db, class_id)
    return {"success": True, "data": class_to_dict(course)}
