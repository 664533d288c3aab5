"""
Example: FastAPI app with metered chat routes and the credit admin router.

- Middleware rate-limits and reserves credits for the estimated tokens
  before the request.
- After the route runs, it reads usage.total_tokens from the JSON response
  and confirms the reservation against it; otherwise the hold is released.
- Client sends X-User-Id and optionally X-Estimated-Tokens.
- Response includes X-Credits-Deducted and X-Credits-Remaining.

Run (after `pip install -e .` and with CREDIT_MONGO_URI set or unset):
  uvicorn examples.fastapi_middleware_example:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import BaseModel

from metered_credits.api.middleware import CreditDeductionMiddleware
from metered_credits.api.router import get_services, router


services = get_services()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await services.db.ensure_indexes()
    yield


app = FastAPI(title="API with credit deduction middleware", lifespan=lifespan)
app.include_router(router)

app.add_middleware(
    CreditDeductionMiddleware,
    guard=services.guard,
    path_prefix="/api",  # only apply to /api/* routes
    response_usage_key="usage.total_tokens",
    rate_limit_action="chat_message",
    skip_paths=("/api/health",),
)


class ChatRequest(BaseModel):
    message: str


class Usage(BaseModel):
    total_tokens: int


class ChatResponse(BaseModel):
    message: str
    usage: Usage  # middleware reads this and confirms credits


@app.post("/api/chat", response_model=ChatResponse)
async def chat(body: ChatRequest):
    """Example endpoint: reports token usage so the middleware can charge it."""
    # Simulate an LLM call and its token count
    total_tokens = len(body.message.split()) * 250
    return ChatResponse(message=f"Echo: {body.message}", usage=Usage(total_tokens=total_tokens))


@app.get("/api/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("examples.fastapi_middleware_example:app", host="0.0.0.0", port=8000, reload=True)
