from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.models import (
    CreditsResponse,
    GenerateContentRequest, GenerateContentResponse,
    AddCreditsRequest, AddCreditsResponse,
    GenerateCouponRequest, GenerateCouponResponse, CouponOut,
    RedeemCouponRequest, RedeemCouponResponse
)
import logging
import json
import datetime
from app.config import load_settings
from app.conversation import ConversationService
from app.errors import ServiceError
from app.llm_client import GeminiClient
from app.storage import open_backend

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("audit_logger")

VERSION = "1.0.0"


def build_service() -> ConversationService:
    settings = load_settings()
    backend = open_backend(settings)
    llm = GeminiClient(
        api_key=settings.api_key,
        model=settings.model,
        base_url=settings.base_url,
        timeout=settings.llm_timeout
    )
    logger.info("Credits system: %s", backend.name)
    return ConversationService(backend, llm, history_turn_limit=settings.history_turn_limit)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.service = build_service()
    yield


app = FastAPI(
    title="Health Chat Credits API",
    description="Credit-gated Gemini chat proxy with coupon top-ups",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request body."})


def get_service(request: Request) -> ConversationService:
    return request.app.state.service


def audit(status: str, **fields) -> None:
    audit_log = {
        "timestamp": datetime.datetime.utcnow().isoformat(),
        "status": status,
        **fields
    }
    if status == "SUCCESS":
        logger.info("AUDIT_LOG: %s", json.dumps(audit_log))
    else:
        logger.error("AUDIT_LOG: %s", json.dumps(audit_log))


@app.get("/")
def root(service: ConversationService = Depends(get_service)):
    """Health check endpoint"""
    return {
        "status": "running",
        "service": "Health Chat Credits API",
        "version": VERSION,
        "storage": service.backend.name
    }


@app.get("/health")
def health_check():
    return {"status": "healthy"}


@app.get("/get-credits/{session_id}", response_model=CreditsResponse)
def get_credits(session_id: str, service: ConversationService = Depends(get_service)):
    return {"credits": service.get_credits(session_id)}


@app.post("/generate-content", response_model=GenerateContentResponse)
def generate_content(request: GenerateContentRequest, service: ConversationService = Depends(get_service)):
    try:
        result = service.generate_content(request.prompt, request.sessionId)
    except ServiceError as e:
        audit("ERROR", session_id=request.sessionId, user_query=request.prompt, error=str(e))
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.exception("Error generating content")
        audit("ERROR", session_id=request.sessionId, user_query=request.prompt, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to generate content.")

    audit(
        "SUCCESS" if result.post_action.ok else "DEGRADED",
        session_id=request.sessionId,
        user_query=request.prompt,
        ai_answer=result.reply,
        credits_left=result.credits_left,
        post_action_errors=result.post_action.errors
    )
    return {"generatedText": result.reply, "creditsLeft": result.credits_left}


@app.post("/add-credits", response_model=AddCreditsResponse)
def add_credits(request: AddCreditsRequest, service: ConversationService = Depends(get_service)):
    try:
        credits = service.add_credits(request.sessionId, request.creditsToAdd)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception:
        logger.exception("Error adding credits")
        raise HTTPException(status_code=500, detail="Failed to add credits.")

    added = int(request.creditsToAdd)
    return {
        "success": True,
        "message": f"Added {added} credits successfully.",
        "credits": credits
    }


# =========================
# COUPONS
# =========================

@app.post("/api/admin/generate-coupon", response_model=GenerateCouponResponse, status_code=201)
def generate_coupon(request: GenerateCouponRequest, service: ConversationService = Depends(get_service)):
    try:
        coupon = service.generate_coupon(request.credits, request.planTitle)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception:
        logger.exception("Error generating coupon")
        raise HTTPException(status_code=500, detail="Failed to generate coupon.")

    return {
        "message": "Coupon generated successfully",
        "coupon": CouponOut(
            code=coupon.code,
            credits=coupon.credits,
            planTitle=coupon.plan_title,
            isUsed=coupon.is_used,
            createdAt=coupon.created_at,
            usedBy=coupon.used_by,
            usedAt=coupon.used_at
        )
    }


@app.post("/api/coupons/redeem", response_model=RedeemCouponResponse)
def redeem_coupon(request: RedeemCouponRequest, service: ConversationService = Depends(get_service)):
    try:
        redemption = service.redeem_coupon(request.couponCode, request.sessionId, request.planTitle)
    except ServiceError as e:
        audit("ERROR", session_id=request.sessionId, coupon=request.couponCode, error=str(e))
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.exception("Error redeeming coupon")
        audit("ERROR", session_id=request.sessionId, coupon=request.couponCode, error=str(e))
        raise HTTPException(status_code=500, detail="Server error while redeeming coupon.")

    audit(
        "SUCCESS",
        session_id=request.sessionId,
        coupon=redemption.code,
        credits_added=redemption.credits_added
    )
    return {
        "success": True,
        "message": f"Successfully added {redemption.credits_added} credits!",
        "creditsAdded": redemption.credits_added,
        "newTotalCredits": redemption.new_total_credits
    }


# For local development
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=load_settings().port)
