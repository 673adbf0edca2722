from datetime import datetime
from pydantic import BaseModel
from typing import Optional


class CreditsResponse(BaseModel):
    credits: int


class GenerateContentRequest(BaseModel):
    prompt: Optional[str] = None
    sessionId: Optional[str] = None


class GenerateContentResponse(BaseModel):
    generatedText: str
    creditsLeft: int


class AddCreditsRequest(BaseModel):
    sessionId: Optional[str] = None
    creditsToAdd: Optional[float] = None


class AddCreditsResponse(BaseModel):
    success: bool
    message: str
    credits: int


# =========================
# COUPONS
# =========================

class GenerateCouponRequest(BaseModel):
    credits: Optional[float] = None
    planTitle: Optional[str] = None


class CouponOut(BaseModel):
    code: str
    credits: int
    planTitle: str
    isUsed: bool
    createdAt: datetime
    usedBy: Optional[str] = None
    usedAt: Optional[datetime] = None


class GenerateCouponResponse(BaseModel):
    message: str
    coupon: CouponOut


class RedeemCouponRequest(BaseModel):
    couponCode: Optional[str] = None
    sessionId: Optional[str] = None
    planTitle: Optional[str] = None


class RedeemCouponResponse(BaseModel):
    success: bool
    message: str
    creditsAdded: int
    newTotalCredits: int
