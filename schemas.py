"""
Database Schemas for the Teen Business Marketplace

Each Pydantic model maps to a document collection. The collection name is the
lowercase of the class name (e.g., Business -> "business").
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


BUSINESS = "business"
INVESTMENT = "investment"
INVESTOR = "investor"
NOTIFICATION = "notification"

BusinessCategory = Literal[
    "Technology", "Education", "Health", "Food", "Fashion",
    "Environment", "Social", "Gaming", "Art", "Other",
]
BUSINESS_CATEGORIES = list(get_args(BusinessCategory))

BusinessStage = Literal["Idea", "Prototype", "Minimum Viable Product", "Growth", "Scaling"]
BUSINESS_STAGES = list(get_args(BusinessStage))

# Limits applied when an entrepreneur lists a business
MIN_FUNDING_GOAL = 500.0
MAX_FUNDING_GOAL = 100000.0
MIN_EQUITY_OFFERED = 1.0
MAX_EQUITY_OFFERED = 49.0


# --- Businesses ---
class TeamMember(BaseModel):
    name: str
    role: str
    bio: str
    photo_url: Optional[str] = None


class BusinessContent(BaseModel):
    name: str = Field(..., min_length=3, max_length=50, description="Business name")
    tagline: str = Field("", description="One-line description")
    description: str = Field("", max_length=500)
    problem: str = ""
    solution: str = ""
    target_market: str = ""
    business_model: str = ""
    competitive_landscape: str = ""
    stage: BusinessStage = "Idea"
    category: str = "Other"
    image_urls: List[str] = Field(default_factory=list)
    video_url: Optional[str] = None
    website_url: Optional[str] = None
    pitch_deck_url: Optional[str] = None
    team_members: Optional[List[TeamMember]] = None


class BusinessCreate(BusinessContent):
    category: BusinessCategory = "Other"
    funding_goal: float = Field(..., ge=MIN_FUNDING_GOAL, le=MAX_FUNDING_GOAL)
    equity: float = Field(..., ge=MIN_EQUITY_OFFERED, le=MAX_EQUITY_OFFERED,
                          description="Percentage of the company offered")


class BusinessUpdate(BaseModel):
    """Entrepreneur-editable content fields; unset fields are left untouched."""

    name: Optional[str] = Field(None, min_length=3, max_length=50)
    tagline: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    problem: Optional[str] = None
    solution: Optional[str] = None
    target_market: Optional[str] = None
    business_model: Optional[str] = None
    competitive_landscape: Optional[str] = None
    stage: Optional[BusinessStage] = None
    category: Optional[BusinessCategory] = None
    image_urls: Optional[List[str]] = None
    video_url: Optional[str] = None
    website_url: Optional[str] = None
    pitch_deck_url: Optional[str] = None
    team_members: Optional[List[TeamMember]] = None


class Business(BusinessContent):
    id: str
    entrepreneur_id: str
    name: str
    description: str = ""
    funding_goal: float = Field(..., gt=0)
    funding_raised: float = Field(0.0, ge=0)
    equity: float = Field(..., ge=0, le=100)
    liked_by_investors: List[str] = Field(default_factory=list)
    disliked_by_investors: List[str] = Field(default_factory=list)
    shortlisted_investors: List[str] = Field(default_factory=list,
                                             description="Investors the entrepreneur is interested in")
    is_active: bool = True
    is_approved: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def funding_progress(self) -> float:
        if self.funding_goal <= 0:
            return 0.0
        return min(self.funding_raised / self.funding_goal * 100, 100.0)


# --- Investors ---
class Investor(BaseModel):
    id: str
    name: str = Field("", description="Investor name")
    email: Optional[EmailStr] = None
    investment_focus: List[str] = Field(default_factory=list, description="Preferred categories")
    min_investment_amount: Optional[float] = Field(None, ge=0)
    max_investment_amount: Optional[float] = Field(None, ge=0)
    investments_made: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class InvestorCreate(BaseModel):
    name: str
    email: Optional[EmailStr] = None
    investment_focus: List[str] = Field(default_factory=list)
    min_investment_amount: Optional[float] = Field(None, ge=0)
    max_investment_amount: Optional[float] = Field(None, ge=0)


class InvestorPreferences(BaseModel):
    investment_focus: List[str] = Field(default_factory=list)
    min_investment_amount: Optional[float] = Field(None, ge=0)
    max_investment_amount: Optional[float] = Field(None, ge=0)


# --- Investments ---
class InvestmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Investment(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    investor_id: str
    business_id: str
    amount: float = Field(..., gt=0)
    equity_percentage: float = Field(..., ge=0)
    status: InvestmentStatus = InvestmentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    contract_url: Optional[str] = None
    transaction_id: Optional[str] = None


class InvestmentRequest(BaseModel):
    business_id: str
    # Checked by the processor so non-positive amounts surface as INVALID_AMOUNT
    amount: float


class PotentialReturn(BaseModel):
    equity_percentage: float
    estimated_value: float
    valuation: float


# --- Matchmaking ---
class SwipeOutcome(str, Enum):
    LIKED = "liked"
    MATCH = "match"


class SwipeResult(BaseModel):
    business_id: str
    outcome: SwipeOutcome


class Match(BaseModel):
    business_id: str
    business_name: str
    business_image_url: Optional[str] = None
    entrepreneur_id: str
    investor_id: str
    # Time the match view was built; matches are never stored
    created_at: datetime = Field(default_factory=utcnow)


class BusinessBatch(BaseModel):
    businesses: List[Business] = Field(default_factory=list)
    exhausted: bool = False


# --- Notifications ---
class NotificationType(str, Enum):
    NEW_MATCH = "new_match"
    NEW_INVESTMENT = "new_investment"
    FUNDING_GOAL = "funding_goal"
    MESSAGE = "message"
    BUSINESS_APPROVED = "business_approved"
    SYSTEM_ALERT = "system_alert"


class Notification(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    type: NotificationType
    recipient_id: str
    sender_id: Optional[str] = None
    business_id: Optional[str] = None
    investment_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    read: bool = False
