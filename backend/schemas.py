# schemas.py
from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional

# ------------------------
# Sessions
# ------------------------
class SessionCreate(BaseModel):
    name: str
    description: Optional[str] = None
    createdAt: Optional[datetime] = None
    id: Optional[str] = None              # client-generated id (legacy clients send one)

class SessionUpdate(BaseModel):
    isActive: bool

class SessionOut(BaseModel):
    id: str
    name: str
    description: Optional[str]
    createdAt: Optional[datetime]
    isActive: bool
    isDeleted: bool
    responseCount: int

# ------------------------
# Submissions
# ------------------------
class ResponseIn(BaseModel):
    problemId: int
    frequency: Optional[int] = None
    severity: Optional[int] = None
    textResponse: Optional[str] = None
    selectedIndex: Optional[int] = None
    selectedOptions: Optional[List[str]] = None

class SubmissionIn(BaseModel):
    id: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None
    responses: List[ResponseIn] = []

class SubmissionCreate(BaseModel):
    submission: SubmissionIn
    name: Optional[str] = None
    email: Optional[str] = None
    sessionId: Optional[str] = None
    configId: Optional[str] = None

# ------------------------
# Config (admin)
# ------------------------
class ProblemSeed(BaseModel):
    id: Optional[int] = None
    title: str
    questionType: Optional[str] = None
    options: Optional[List[str]] = None

class SectionSeed(BaseModel):
    id: Optional[str] = None
    name: str
    color: Optional[str] = None
    problems: List[ProblemSeed] = []

class ConfigCreate(BaseModel):
    id: Optional[str] = None
    title: str
    description: Optional[str] = None
    activate: bool = True
    sections: List[SectionSeed] = []

class SectionCreate(BaseModel):
    id: Optional[str] = None
    name: str
    color: Optional[str] = None
    displayOrder: Optional[int] = None
    configId: Optional[str] = None       # defaults to the active config

class SectionUpdate(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    displayOrder: Optional[int] = None

class ProblemCreate(BaseModel):
    id: Optional[int] = None             # allocated when omitted
    sectionId: str
    title: str
    questionType: Optional[str] = "slider"
    options: Optional[List[str]] = None
    displayOrder: Optional[int] = None

class ProblemUpdate(BaseModel):
    title: Optional[str] = None
    questionType: Optional[str] = None
    options: Optional[List[str]] = None
    displayOrder: Optional[int] = None

# ------------------------
# AI summary
# ------------------------
class AISummaryRequest(BaseModel):
    sessionId: Optional[str] = None
    configId: Optional[str] = None
    limit: int = Field(5, ge=1, le=20)
