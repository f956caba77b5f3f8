from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas import ResponseBase


class ClassCreate(BaseModel):
    courseCode: str = Field(..., min_length=3, max_length=30, description="課程代碼")
    section: str = Field(..., min_length=1, max_length=20, description="班別")
    academicYear: Optional[str] = Field(None, pattern=r"^\d{4}-\d{4}$", description="學年度，例如 2024-2025")
    ficId: str = Field(..., description="授課教師ID")

    @field_validator("courseCode", "section")
    @classmethod
    def strip_code(cls, v: str) -> str:
        return v.strip()


class EnrollmentCreate(BaseModel):
    userIds: List[str] = Field(..., min_length=1, description="要加入課程的學生ID")

    @field_validator("userIds")
    @classmethod
    def unique_ids(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))


# 回應模型
class ClassInfo(BaseModel):
    classId: str = Field(..., description="課程ID")
    courseCode: str = Field(..., description="課程代碼")
    section: str = Field(..., description="班別")
    academicYear: Optional[str] = Field(None, description="學年度")
    ficId: Optional[str] = Field(None, description="授課教師ID")
    ficName: Optional[str] = Field(None, description="授課教師姓名")
    isActive: bool = Field(..., description="是否啟用")
    studentIds: List[str] = Field(default_factory=list, description="修課學生ID")
    createdAt: Optional[datetime] = Field(None, description="建立時間")


class ClassResponse(ResponseBase):
    data: ClassInfo


class ClassList(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "classes": [
                {
                    "classId": "class-1",
                    "courseCode": "EE101",
                    "section": "A",
                    "academicYear": "2024-2025",
                    "ficId": "faculty-1",
                    "isActive": True,
                    "studentIds": ["student-1"],
                }
            ]
        }},
    )


class EnrollmentResult(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {"classId": "class-1", "added": ["student-2"], "alreadyEnrolled": ["student-1"]}},
    )
