"""Pydantic schemas for checkout and subscriptions"""
from pydantic import BaseModel
from typing import List, Optional


class CheckoutRequest(BaseModel):
    app: str  # 'calculator', 'timekeeper', 'dashboard'
    redirect_url: Optional[str] = None
    token: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    id: str
    url: str


class TokenValidationResponse(BaseModel):
    valid: bool
    app: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    error: Optional[str] = None


class CheckoutSuccessResponse(BaseModel):
    app: str
    display_name: str
    session_id: Optional[str] = None
    return_url: str
    is_mobile: bool


class PortalRequest(BaseModel):
    customer_id: str
    return_url: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: int
    app: str
    status: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_end: Optional[str] = None
    cancel_at_period_end: bool = False


class SubscriptionListResponse(BaseModel):
    subscriptions: List[SubscriptionResponse]
    active_count: int
