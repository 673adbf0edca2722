import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from app.coupon_registry import CouponRecord, Redemption
from app.credit_ledger import positive_amount
from app.errors import (
    InsufficientCreditsError,
    ServiceError,
    StoreUnavailableError,
    UpstreamError,
    ValidationError,
)
from app.session_manager import Turn
from app.storage import Backend

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You are an AI Health Assistant integrated into a medical clinic website. Your purpose is to assist patients by answering health-related questions in a simple and easy-to-understand way.

Instructions:
- Only respond if the question is clearly related to health, the human body, symptoms, prevention, hygiene, medicine, or well-being.
- If the question is NOT health-related, respond with: "This question is not related to health. Please ask a health-related question."

Formatting and Language:
- Keep your answers short and to the point. If the person is asking about the cause of a symptom, do not just say it may be a serious condition, name the condition.
- Use simple, everyday words that even less-educated users can understand easily.
- Avoid using medical jargon unless absolutely necessary (and explain it if used).
- Reply in the **same language** in which the question was asked.

Start the conversation now.
"""


@dataclass
class PostActionResult:
    """Outcome of the bookkeeping that follows a delivered reply."""
    credit_deducted: bool = False
    reply_stored: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.credit_deducted and self.reply_stored


@dataclass
class GenerationResult:
    reply: str
    credits_left: int
    post_action: PostActionResult


class SessionLocks:
    """One lock per session id; flows for the same session run one at a time."""

    def __init__(self):
        self._guard = threading.Lock()
        # session_id -> [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, session_id: str):
        with self._guard:
            entry = self._locks.setdefault(session_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[session_id]


class ConversationService:
    def __init__(self, backend: Backend, llm, system_prompt: str = SYSTEM_PROMPT,
                 history_turn_limit: int = 0):
        self.backend = backend
        self.llm = llm
        self.system_prompt = system_prompt
        self.history_turn_limit = history_turn_limit
        self.locks = SessionLocks()

    @property
    def ledger(self):
        return self.backend.ledger

    @property
    def history(self):
        return self.backend.history

    def get_credits(self, session_id: str) -> int:
        return self.ledger.get_balance(session_id)

    def context_window(self, turns: list[Turn]) -> list[Turn]:
        """The turns sent to the model: the system instruction plus the most recent turns."""
        limit = self.history_turn_limit
        if limit <= 0 or len(turns) <= limit + 1:
            return turns
        return [turns[0]] + turns[-limit:]

    def generate_content(self, prompt: Optional[str], session_id: Optional[str]) -> GenerationResult:
        if not prompt or not session_id:
            raise ValidationError("Prompt and sessionId are required.")

        with self.locks.hold(session_id):
            if not self.ledger.has_sufficient_balance(session_id):
                raise InsufficientCreditsError(
                    "Insufficient credits. Please recharge your credits or buy a monthly plan."
                )

            self.history.get_or_create_history(session_id, self.system_prompt)
            self.history.append_user_turn(session_id, prompt)
            turns = self.history.get_history(session_id)

            reply = self.llm.generate(self.context_window(turns))
            if not reply:
                raise UpstreamError("No valid text response from Gemini.")

            post_action = self._record_reply(session_id, reply)
            credits_left = self.ledger.get_balance(session_id)

        return GenerationResult(reply=reply, credits_left=credits_left, post_action=post_action)

    def _record_reply(self, session_id: str, reply: str) -> PostActionResult:
        """Charge the credit and store the model turn. Failures are logged, not raised."""
        result = PostActionResult()
        try:
            result.credit_deducted = self.ledger.decrement(session_id)
            if not result.credit_deducted:
                result.errors.append("no credit left to deduct")
                logger.warning("Reply delivered to %s without a credit to deduct", session_id)
        except ServiceError as e:
            result.errors.append(str(e))
            logger.error("Error updating credits: %s", e)

        try:
            self.history.append_model_turn(session_id, reply)
            result.reply_stored = True
        except ServiceError as e:
            result.errors.append(str(e))
            logger.error("Error storing session history: %s", e)
        return result

    def add_credits(self, session_id: Optional[str], credits_to_add) -> int:
        message = "Valid sessionId and creditsToAdd are required."
        if not session_id:
            raise ValidationError(message)
        amount = positive_amount(credits_to_add, message)
        with self.locks.hold(session_id):
            return self.ledger.increment(session_id, amount)

    def _coupons(self):
        if self.backend.coupons is None:
            raise StoreUnavailableError("Database service is not available.")
        return self.backend.coupons

    def generate_coupon(self, credits, plan_title: Optional[str]) -> CouponRecord:
        return self._coupons().generate(credits, plan_title)

    def redeem_coupon(self, code: Optional[str], session_id: Optional[str],
                      plan_title: Optional[str]) -> Redemption:
        coupons = self._coupons()
        if not code or not session_id or not plan_title:
            raise ValidationError("Coupon code, session ID, and plan title are required.")
        with self.locks.hold(session_id):
            return coupons.redeem(code, session_id, plan_title)
