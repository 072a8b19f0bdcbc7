from __future__ import annotations

import json
import logging
import re
import time
from functools import lru_cache
from typing import Any, Literal, TYPE_CHECKING

import psycopg
import stripe
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

import db
from auth import SESSION_COOKIE, verify_token
from billing import (
    PRODUCTS,
    ConfigurationError,
    SubscriptionReconciler,
    WebhookVerificationError,
    configure_stripe,
    create_checkout_session,
    verify_webhook,
)
from cache import DEFAULT_TTL_SECONDS, STATIC_TTL_SECONDS, ResponseCache
from config import auth_secret, cors_origins, env, int_env, payments_enabled, validate_env
from db import (
    create_conversation,
    create_message,
    get_conversation,
    get_conversation_messages,
    get_latest_subscription,
    get_user_analysis_results,
    get_user_conversations,
    get_user_generated_content,
    ping,
    save_analysis_result,
    save_generated_content,
    upsert_user,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("influxity")

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI

EmailType = Literal["sales", "support", "marketing", "followup"]
EmailTone = Literal["professional", "friendly", "casual"]
SalesCopyType = Literal["headline", "cta", "description", "product"]
ContentType = Literal[
    "email_campaign",
    "landing_page",
    "social_media",
    "blog_post",
    "product_launch",
    "case_study",
    "faq",
]
AnalysisType = Literal[
    "sales",
    "customer_behavior",
    "operational_efficiency",
    "roi",
    "competitive",
    "growth",
]

CHAT_HISTORY_LIMIT = 10
CHAT_FALLBACK_REPLY = "I apologize, but I couldn't generate a response."


class UserResponse(BaseModel):
    id: int
    open_id: str
    name: str | None = None
    email: str | None = None
    role: str


class CreateConversationRequest(BaseModel):
    title: str | None = None


class CreateConversationResponse(BaseModel):
    success: bool
    conversation_id: int


class SendMessageRequest(BaseModel):
    message: str


class ChatReply(BaseModel):
    message: str


class EmailRequest(BaseModel):
    type: EmailType
    context: str
    tone: EmailTone | None = None


class SalesCopyRequest(BaseModel):
    type: SalesCopyType
    product: str
    target_audience: str | None = None


class ContentRequest(BaseModel):
    type: ContentType
    topic: str
    details: str | None = None


class GeneratedContentResponse(BaseModel):
    content: str


class AnalysisRequest(BaseModel):
    type: AnalysisType
    data: str
    context: str | None = None


class AnalysisResponse(BaseModel):
    insights: str
    recommendations: str


class CheckoutRequest(BaseModel):
    plan: Literal["STARTER", "PROFESSIONAL"]


class CheckoutResponse(BaseModel):
    checkout_url: str


app = FastAPI(title="Influxity Backend")

validate_env()
configure_stripe()

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _build_response_cache() -> ResponseCache:
    max_keys = int_env("CACHE_MAX_KEYS", 0)
    return ResponseCache(
        default_ttl=int_env("CACHE_DEFAULT_TTL_SECONDS", DEFAULT_TTL_SECONDS),
        static_ttl=int_env("CACHE_STATIC_TTL_SECONDS", STATIC_TTL_SECONDS),
        max_keys=max_keys or None,
    )


app.state.response_cache = _build_response_cache()
app.state.reconciler = SubscriptionReconciler(store=db)
app.state.started_at = time.monotonic()


def _response_cache(request: Request) -> ResponseCache:
    return request.app.state.response_cache


def _reconciler(request: Request) -> SubscriptionReconciler:
    return request.app.state.reconciler


# Session handling


def _read_session_token(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip()
    return request.cookies.get(SESSION_COOKIE)


def _require_user(request: Request) -> dict[str, Any]:
    token = _read_session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    try:
        claims = verify_token(token, auth_secret())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid session.") from exc

    open_id = str(claims["sub"])
    role = "admin" if open_id == env("OWNER_OPEN_ID") else None
    return upsert_user(
        open_id=open_id,
        name=claims.get("name"),
        email=claims.get("email"),
        login_method=claims.get("login_method"),
        role=role,
    )


def _require_admin(request: Request) -> dict[str, Any]:
    user = _require_user(request)
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden.")
    return user


def _request_origin(request: Request) -> str:
    origin = request.headers.get("origin")
    if origin:
        return origin.rstrip("/")
    return f"{request.url.scheme}://{request.headers.get('host', request.url.netloc)}"


# LLM collaborator


@lru_cache(maxsize=1)
def _get_llm() -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    api_key = env("OPENROUTER_API_KEY")
    if not api_key:
        raise RuntimeError("OPENROUTER_API_KEY is not set.")

    max_tokens_raw = env("OPENROUTER_MAX_TOKENS")
    headers: dict[str, str] = {}
    app_url = env("OPENROUTER_APP_URL")
    app_name = env("OPENROUTER_APP_NAME")
    if app_url:
        headers["HTTP-Referer"] = app_url
    if app_name:
        headers["X-Title"] = app_name

    return ChatOpenAI(
        model=env("OPENROUTER_MODEL", "openai/gpt-4o-mini"),
        api_key=api_key,
        base_url=env("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
        temperature=float(env("OPENROUTER_TEMPERATURE", "0.7") or 0.7),
        max_tokens=int(max_tokens_raw) if max_tokens_raw else None,
        default_headers=headers or None,
    )


def _invoke_llm(messages: list[BaseMessage]) -> str:
    try:
        response = _get_llm().invoke(messages)
    except Exception as exc:
        logger.exception("LLM call failed.")
        raise HTTPException(status_code=500, detail="AI generation failed.") from exc
    content = getattr(response, "content", None) or ""
    if not isinstance(content, str):
        content = json.dumps(content)
    return content


def _generate(
    request: Request,
    cache_type: str,
    system_prompt: str,
    user_prompt: str,
    *,
    static: bool = False,
) -> str:
    """Return the model's answer, consulting the response cache first."""
    cache = _response_cache(request)
    cache_prompt = f"{system_prompt}\n\n{user_prompt}"
    cached = cache.get(cache_type, cache_prompt)
    if cached is not None:
        logger.info("Cache hit for %s.", cache_type)
        return cached

    content = _invoke_llm([SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)])
    if content:
        if static:
            cache.set_static(cache_type, cache_prompt, content)
        else:
            cache.set(cache_type, cache_prompt, content)
    return content


def _extract_json(text: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            raise ValueError("Unable to parse JSON from model response.")
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object.")
    return data


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return "\n".join(f"- {_as_text(item)}" for item in value)
    return json.dumps(value)


# Prompts

CHAT_SYSTEM_PROMPT = (
    "You are an AI business assistant for Influxity.ai. Help users with business automation, "
    "provide insights, and answer questions about AI-powered business solutions."
)

SALES_COPY_SYSTEM_PROMPT = (
    "You are an expert sales copywriter. Create compelling, conversion-focused copy that drives action."
)

CONTENT_SYSTEM_PROMPT = (
    "You are an expert content strategist and copywriter. Create engaging, high-quality content "
    "that resonates with audiences."
)

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert business analyst. Provide detailed, data-driven insights with specific "
    "recommendations. Respond with a JSON object only, with two string fields: "
    '"insights" (a summary followed by the key insights) and "recommendations" '
    "(concrete, prioritized actions)."
)


def _email_system_prompt(email_type: str, tone: str) -> str:
    return (
        f"You are an expert email copywriter. Generate {email_type} emails that are {tone} "
        "and effective."
    )


def _email_prompt(email_type: str, context: str) -> str:
    prompts = {
        "sales": f"Generate a professional sales email based on this context: {context}. "
        "Make it compelling and action-oriented.",
        "support": f"Generate a helpful support email based on this context: {context}. "
        "Be empathetic and solution-focused.",
        "marketing": f"Generate an engaging marketing email based on this context: {context}. "
        "Focus on benefits and include a clear call-to-action.",
        "followup": f"Generate a follow-up email based on this context: {context}. "
        "Be polite and reference previous interaction.",
    }
    return prompts[email_type]


def _sales_copy_prompt(copy_type: str, product: str, audience: str | None) -> str:
    targeting = f" targeting {audience}" if audience else ""
    prompts = {
        "headline": f"Create 5 compelling headlines for: {product}{targeting}",
        "cta": f"Generate 5 powerful call-to-action phrases for: {product}",
        "description": f"Write a persuasive product description for: {product}{targeting}",
        "product": "Create a complete product description with features, benefits, and use cases "
        f"for: {product}",
    }
    return prompts[copy_type]


def _content_prompt(content_type: str, topic: str, details: str | None) -> str:
    extra = details or ""
    prompts = {
        "email_campaign": f"Create a 5-email campaign sequence for: {topic}. {extra}",
        "landing_page": f"Write complete landing page copy for: {topic}. Include headline, "
        f"subheadline, features, benefits, and CTA. {extra}",
        "social_media": f"Generate a 7-day social media content calendar for: {topic}. {extra}",
        "blog_post": f"Write a comprehensive blog post about: {topic}. {extra}",
        "product_launch": f"Create a product launch announcement for: {topic}. {extra}",
        "case_study": f"Write a customer case study for: {topic}. {extra}",
        "faq": f"Generate a comprehensive FAQ section for: {topic}. {extra}",
    }
    return prompts[content_type].strip()


def _analysis_prompt(analysis_type: str, data: str, context: str | None) -> str:
    extra = context or ""
    prompts = {
        "sales": f"Analyze this sales data and provide actionable insights: {data}. {extra}",
        "customer_behavior": "Analyze customer behavior patterns and provide segmentation "
        f"insights: {data}. {extra}",
        "operational_efficiency": "Analyze operational efficiency and identify improvement "
        f"opportunities: {data}. {extra}",
        "roi": f"Calculate ROI and provide financial analysis: {data}. {extra}",
        "competitive": "Perform competitive analysis and identify strategic opportunities: "
        f"{data}. {extra}",
        "growth": "Analyze growth potential and provide strategic recommendations: "
        f"{data}. {extra}",
    }
    return prompts[analysis_type].strip()


def _parse_analysis(text: str) -> AnalysisResponse:
    try:
        data = _extract_json(text)
    except ValueError:
        logger.warning("Analysis response was not JSON; storing it as plain insights.")
        return AnalysisResponse(insights=text.strip(), recommendations="")
    return AnalysisResponse(
        insights=_as_text(data.get("insights")) or text.strip(),
        recommendations=_as_text(data.get("recommendations")),
    )


# Health


@app.get("/health")
def health_check(raw_request: Request, response: Response) -> dict[str, Any]:
    status = "healthy"
    checks: dict[str, Any] = {}

    started = time.perf_counter()
    try:
        ping()
        checks["database"] = {
            "status": "healthy",
            "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
        }
    except RuntimeError:
        checks["database"] = {"status": "unavailable", "response_time_ms": 0}
    except psycopg.Error:
        logger.warning("Database health check failed.", exc_info=True)
        checks["database"] = {
            "status": "unhealthy",
            "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
        }
        status = "degraded"

    checks["cache"] = {"status": "healthy", "stats": _response_cache(raw_request).stats()}

    if status != "healthy":
        response.status_code = 503
    return {
        "status": status,
        "uptime_seconds": round(time.monotonic() - raw_request.app.state.started_at, 1),
        "checks": checks,
    }


@app.get("/health/live")
def liveness_probe() -> dict[str, str]:
    return {"status": "alive"}


@app.get("/health/ready")
def readiness_probe(response: Response) -> dict[str, str]:
    try:
        ping()
    except RuntimeError:
        response.status_code = 503
        return {"status": "not ready", "reason": "database unavailable"}
    except psycopg.Error:
        response.status_code = 503
        return {"status": "not ready", "reason": "database connection failed"}
    return {"status": "ready"}


# Auth


@app.get("/api/auth/me", response_model=UserResponse)
def me(raw_request: Request) -> UserResponse:
    return UserResponse.model_validate(_require_user(raw_request))


@app.post("/api/auth/logout")
def logout(response: Response) -> dict[str, bool]:
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"success": True}


# Chat


def _owned_conversation(conversation_id: int, user: dict[str, Any]) -> dict[str, Any]:
    conversation = get_conversation(conversation_id)
    if not conversation or conversation["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    return conversation


@app.post("/api/chat/conversations", response_model=CreateConversationResponse)
def start_conversation(
    payload: CreateConversationRequest, raw_request: Request
) -> CreateConversationResponse:
    user = _require_user(raw_request)
    title = (payload.title or "").strip() or "New Conversation"
    conversation_id = create_conversation(user_id=user["id"], title=title)
    return CreateConversationResponse(success=True, conversation_id=conversation_id)


@app.get("/api/chat/conversations")
def list_conversations(raw_request: Request) -> list[dict[str, Any]]:
    user = _require_user(raw_request)
    return get_user_conversations(user["id"])


@app.get("/api/chat/conversations/{conversation_id}/messages")
def list_messages(conversation_id: int, raw_request: Request) -> list[dict[str, Any]]:
    user = _require_user(raw_request)
    _owned_conversation(conversation_id, user)
    return get_conversation_messages(conversation_id)


@app.post("/api/chat/conversations/{conversation_id}/messages", response_model=ChatReply)
def send_message(conversation_id: int, payload: SendMessageRequest, raw_request: Request) -> ChatReply:
    user = _require_user(raw_request)
    _owned_conversation(conversation_id, user)
    text = payload.message.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Missing message text.")

    create_message(conversation_id=conversation_id, role="user", content=text)
    history = get_conversation_messages(conversation_id)[-CHAT_HISTORY_LIMIT:]
    messages: list[BaseMessage] = [SystemMessage(content=CHAT_SYSTEM_PROMPT)]
    for entry in history:
        if entry["role"] == "assistant":
            messages.append(AIMessage(content=entry["content"]))
        elif entry["role"] == "user":
            messages.append(HumanMessage(content=entry["content"]))

    reply = _invoke_llm(messages) or CHAT_FALLBACK_REPLY
    create_message(conversation_id=conversation_id, role="assistant", content=reply)
    return ChatReply(message=reply)


# Generators


@app.post("/api/email/generate", response_model=GeneratedContentResponse)
def generate_email(payload: EmailRequest, raw_request: Request) -> GeneratedContentResponse:
    user = _require_user(raw_request)
    context = payload.context.strip()
    if not context:
        raise HTTPException(status_code=400, detail="Missing email context.")

    tone = payload.tone or "professional"
    content = _generate(
        raw_request,
        f"email:{payload.type}",
        _email_system_prompt(payload.type, tone),
        _email_prompt(payload.type, context),
    )
    save_generated_content(
        user_id=user["id"], type=f"email_{payload.type}", prompt=context, content=content
    )
    return GeneratedContentResponse(content=content)


@app.get("/api/email/history")
def email_history(raw_request: Request, type: EmailType | None = None) -> list[dict[str, Any]]:
    user = _require_user(raw_request)
    if type:
        return get_user_generated_content(user["id"], f"email_{type}")
    return [
        row
        for row in get_user_generated_content(user["id"])
        if str(row.get("type", "")).startswith("email_")
    ]


@app.post("/api/sales-copy/generate", response_model=GeneratedContentResponse)
def generate_sales_copy(payload: SalesCopyRequest, raw_request: Request) -> GeneratedContentResponse:
    user = _require_user(raw_request)
    product = payload.product.strip()
    if not product:
        raise HTTPException(status_code=400, detail="Missing product.")

    content = _generate(
        raw_request,
        f"sales_copy:{payload.type}",
        SALES_COPY_SYSTEM_PROMPT,
        _sales_copy_prompt(payload.type, product, payload.target_audience),
    )
    content_type = "product_description" if payload.type == "product" else "sales_copy"
    save_generated_content(user_id=user["id"], type=content_type, prompt=product, content=content)
    return GeneratedContentResponse(content=content)


@app.get("/api/sales-copy/history")
def sales_copy_history(raw_request: Request) -> list[dict[str, Any]]:
    user = _require_user(raw_request)
    return get_user_generated_content(user["id"], "sales_copy")


@app.post("/api/content/generate", response_model=GeneratedContentResponse)
def generate_content(payload: ContentRequest, raw_request: Request) -> GeneratedContentResponse:
    user = _require_user(raw_request)
    topic = payload.topic.strip()
    if not topic:
        raise HTTPException(status_code=400, detail="Missing topic.")

    content = _generate(
        raw_request,
        f"content:{payload.type}",
        CONTENT_SYSTEM_PROMPT,
        _content_prompt(payload.type, topic, payload.details),
        static=True,
    )
    save_generated_content(user_id=user["id"], type=payload.type, prompt=topic, content=content)
    return GeneratedContentResponse(content=content)


@app.get("/api/content/history")
def content_history(raw_request: Request, type: ContentType | None = None) -> list[dict[str, Any]]:
    user = _require_user(raw_request)
    return get_user_generated_content(user["id"], type)


@app.post("/api/analysis/analyze", response_model=AnalysisResponse)
def analyze(payload: AnalysisRequest, raw_request: Request) -> AnalysisResponse:
    user = _require_user(raw_request)
    data = payload.data.strip()
    if not data:
        raise HTTPException(status_code=400, detail="Missing data to analyze.")

    raw = _generate(
        raw_request,
        f"analysis:{payload.type}",
        ANALYSIS_SYSTEM_PROMPT,
        _analysis_prompt(payload.type, data, payload.context),
    )
    result = _parse_analysis(raw)
    save_analysis_result(
        user_id=user["id"],
        analysis_type=payload.type,
        input_data=data,
        insights=result.insights,
        recommendations=result.recommendations,
    )
    return result


@app.get("/api/analysis/history")
def analysis_history(raw_request: Request, type: AnalysisType | None = None) -> list[dict[str, Any]]:
    user = _require_user(raw_request)
    return get_user_analysis_results(user["id"], type)


# Subscription and billing


@app.get("/api/plans")
def list_plans() -> list[dict[str, Any]]:
    return [{"id": key, **product} for key, product in PRODUCTS.items()]


@app.get("/api/subscription")
def current_subscription(raw_request: Request) -> dict[str, Any] | None:
    user = _require_user(raw_request)
    return get_latest_subscription(user["id"])


@app.post("/api/stripe/checkout", response_model=CheckoutResponse)
def create_checkout(payload: CheckoutRequest, raw_request: Request) -> CheckoutResponse:
    if not payments_enabled():
        raise HTTPException(status_code=503, detail="Payments are disabled.")
    user = _require_user(raw_request)
    try:
        checkout_url = create_checkout_session(
            user_id=user["id"],
            email=user.get("email") or "",
            display_name=user.get("name") or "",
            plan=payload.plan,
            origin=_request_origin(raw_request),
        )
    except ConfigurationError as exc:
        logger.error("Checkout misconfigured: %s", exc)
        raise HTTPException(status_code=500, detail="Checkout is not configured for this plan.") from exc
    except stripe.StripeError as exc:
        logger.exception("Stripe checkout session creation failed.")
        raise HTTPException(status_code=502, detail="Payment provider unavailable.") from exc
    return CheckoutResponse(checkout_url=checkout_url)


@app.post("/api/stripe/webhook")
async def stripe_webhook(request: Request) -> dict[str, bool]:
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.error("Webhook received without signature.")
        raise HTTPException(status_code=400, detail="No signature.")
    secret = env("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured.")
        raise HTTPException(status_code=400, detail="Webhook secret not configured.")

    raw_body = await request.body()
    try:
        event = verify_webhook(raw_body, signature, secret)
    except WebhookVerificationError as exc:
        logger.error("Webhook verification failed: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}") from exc

    try:
        return _reconciler(request).handle_event(event)
    except Exception as exc:
        logger.exception("Webhook processing failed for event %s.", event.get("id"))
        raise HTTPException(status_code=500, detail="Webhook processing failed.") from exc


# Administration


@app.get("/api/admin/cache/stats")
def cache_stats(raw_request: Request) -> dict[str, int]:
    _require_admin(raw_request)
    return _response_cache(raw_request).stats()


@app.post("/api/admin/cache/clear")
def clear_cache(raw_request: Request) -> dict[str, bool]:
    _require_admin(raw_request)
    _response_cache(raw_request).clear()
    return {"cleared": True}
