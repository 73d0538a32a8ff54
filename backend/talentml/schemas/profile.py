from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ProfileType(str, Enum):
    CANDIDATE = "candidate"
    JOB = "job"


class Skill(BaseModel):
    name: str
    level: Optional[float] = None  # 0-5 proficiency


class Experience(BaseModel):
    title: str = ""
    company: str = ""
    industry: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None  # None means current role
    description: str = ""


class Education(BaseModel):
    degree: str = ""
    field: str = ""
    institution: str = ""


class Location(BaseModel):
    city: Optional[str] = None
    country: Optional[str] = None
    type: Optional[str] = None  # urban, suburban, rural
    timezone_offset: Optional[float] = None


class SalaryRange(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None
    currency: str = "USD"


class Preferences(BaseModel):
    employment_types: list[str] = Field(default_factory=list)
    work_style: str = ""
    company_size: str = ""
    growth_opportunities: bool = False
    remote_work: bool = False


class ProfileBase(BaseModel):
    id: str
    user_id: Optional[str] = None
    title: str = ""
    location: Optional[Location] = None
    preferences: Optional[Preferences] = None
    completion_score: Optional[float] = None  # 0-100
    verified: bool = False
    featured: bool = False
    last_updated: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CandidateProfile(ProfileBase):
    summary: str = ""
    skills: list[Skill] = Field(default_factory=list)
    experience: list[Experience] = Field(default_factory=list)
    education: list[Education] = Field(default_factory=list)
    salary_expectation: Optional[SalaryRange] = None


class JobProfile(ProfileBase):
    description: str = ""
    required_skills: list[str] = Field(default_factory=list)
    experience_required: Optional[float] = None  # years
    education_requirements: list[str] = Field(default_factory=list)
    remote_work_policy: Optional[str] = None  # remote, hybrid, on-site
    salary_range: Optional[SalaryRange] = None
