"""FastAPI surface: dry-run testing, manual dispatch, analytics and rule management."""

import json
import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import Config
from .engine import EngagementEngine
from .models import AutoReplyRule, HumanAction, MatchType, Sentiment
from .orm.base import as_utc, utcnow
from .services import AnalyticsAggregator, AnalyticsWindow
from .services.analytics_service import export_csv, snapshot_to_dict

logger = logging.getLogger(__name__)


class RuleIn(BaseModel):
    """Rule fields accepted when creating a rule."""

    name: str = Field(..., min_length=1)
    response_template: str = Field(..., min_length=1)
    keywords: list[str] = Field(default_factory=list)
    phrases: list[str] = Field(default_factory=list)
    match_type: MatchType = MatchType.ANY
    priority: int = 0
    is_active: bool = True
    sentiment_filter: list[Sentiment] = Field(default_factory=list)
    max_per_hour: int = Field(default=10, ge=0)
    max_per_day: int = Field(default=50, ge=0)
    cooldown_minutes: int = Field(default=5, ge=0)


class RuleUpdate(BaseModel):
    """Partial rule update; omitted fields keep their value."""

    name: Optional[str] = None
    response_template: Optional[str] = None
    keywords: Optional[list[str]] = None
    phrases: Optional[list[str]] = None
    match_type: Optional[MatchType] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    sentiment_filter: Optional[list[Sentiment]] = None
    max_per_hour: Optional[int] = Field(default=None, ge=0)
    max_per_day: Optional[int] = Field(default=None, ge=0)
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)


class DryRunRequest(BaseModel):
    """Dry-run request: a stored rule id or an unsaved rule, plus text."""

    text: str
    rule_id: Optional[str] = None
    rule: Optional[RuleIn] = None
    sentiment: Optional[Sentiment] = None


class DryRunResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    matched: bool
    confidence: float
    matched_keywords: list[str]
    matched_phrases: list[str]
    response_text: Optional[str]
    unresolved_variables: list[str] = []


class ExecuteRequest(BaseModel):
    """Manual dispatch; ``rule_id`` must name an active rule that matches."""

    mention_id: str
    rule_id: Optional[str] = None


class SentimentRequest(BaseModel):
    """Analyze one text, a batch of texts, or a stored mention (checked in that order)."""

    text: Optional[str] = None
    batch: Optional[list[str]] = None
    mention_id: Optional[str] = None


class SentimentOverride(BaseModel):
    mention_id: str
    sentiment: Sentiment
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class HumanResponse(BaseModel):
    action: HumanAction
    notes: Optional[str] = None
    response_text: Optional[str] = None


def rule_to_dict(rule: AutoReplyRule) -> dict[str, Any]:
    """JSON-ready dict of a rule."""
    data = asdict(rule)
    data["sentiment_filter"] = sorted(s.value for s in rule.sentiment_filter)
    return jsonable_encoder(data)


def _window(
    start: Optional[datetime], end: Optional[datetime], granularity: str
) -> AnalyticsWindow:
    end = as_utc(end) or utcnow()
    start = as_utc(start) or end - timedelta(days=7)
    try:
        return AnalyticsWindow(start=start, end=end, granularity=granularity)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


def create_api_app(config: Config, engine: EngagementEngine) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Application configuration
        engine: EngagementEngine whose services back every route

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="engagebot",
        description="Auto-reply rules, flagged mentions and engagement analytics",
        version="0.1.0",
    )
    analytics = AnalyticsAggregator(engine.mention_service, engine.audit_log)
    rules = engine.rule_service

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": "engagebot"}

    @app.post("/auto-reply/test", response_model=DryRunResponse)
    async def test_rule(request: DryRunRequest) -> DryRunResponse:
        """Evaluate a rule against text with no throttle or audit side effects."""
        if request.rule_id is not None:
            rule = await rules.get_rule(request.rule_id)
            if rule is None:
                raise HTTPException(status_code=404, detail="Rule not found")
        elif request.rule is not None:
            try:
                rule = AutoReplyRule(id="draft", **request.rule.model_dump())
            except ValueError as e:
                raise HTTPException(status_code=422, detail=str(e))
        else:
            raise HTTPException(status_code=422, detail="Provide rule_id or rule")

        result = engine.test_rule(rule, request.text, request.sentiment)
        return DryRunResponse(**asdict(result))

    @app.post("/auto-reply/execute")
    async def execute(request: ExecuteRequest) -> dict[str, Any]:
        """Manually dispatch a reply for a stored mention."""
        mention = await engine.mention_service.get_mention(request.mention_id)
        if mention is None:
            raise HTTPException(status_code=404, detail="Mention not found")
        if mention.is_replied:
            raise HTTPException(status_code=409, detail="Mention already replied")

        try:
            result = await engine.execute(request.mention_id, request.rule_id)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        if result.duplicate:
            raise HTTPException(status_code=409, detail="Mention already replied or in flight")

        logger.info("Manual dispatch for mention %s: %s", request.mention_id, result.outcome)
        return jsonable_encoder(asdict(result))

    @app.get("/analytics")
    async def get_analytics(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        granularity: Optional[Literal["hour", "day"]] = None,
    ) -> dict[str, Any]:
        """Aggregate metrics for [start, end); the last 7 days by default."""
        window = _window(start, end, granularity or config.api.default_granularity)
        try:
            snapshot = await analytics.summarize(window)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return snapshot_to_dict(snapshot)

    @app.get("/analytics/export")
    async def export_analytics(
        format: Literal["csv", "json"] = "csv",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        granularity: Optional[Literal["hour", "day"]] = None,
    ) -> Response:
        """Download analytics as CSV (time series) or JSON (full snapshot)."""
        window = _window(start, end, granularity or config.api.default_granularity)
        try:
            snapshot = await analytics.summarize(window)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        filename = f"analytics-{window.end.date().isoformat()}.{format}"
        headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
        if format == "csv":
            return Response(export_csv(snapshot), media_type="text/csv", headers=headers)

        return Response(
            json.dumps(snapshot_to_dict(snapshot), indent=2),
            media_type="application/json",
            headers=headers,
        )

    @app.get("/mentions/flagged")
    async def flagged_mentions(limit: int = Query(default=50, ge=1, le=500)) -> list[dict[str, Any]]:
        """Flagged mentions, highest priority first."""
        mentions = await engine.mention_service.list_flagged(limit)
        return jsonable_encoder([asdict(m) for m in mentions])

    @app.post("/mentions/sentiment")
    async def analyze_sentiment(request: SentimentRequest) -> dict[str, Any]:
        """Sentiment for a batch of texts, one text, or a stored mention."""
        if request.batch is not None:
            analyses = [engine.classifier.analyze(text) for text in request.batch]
            return jsonable_encoder(
                {
                    "analyses": [asdict(a) for a in analyses],
                    "distribution": engine.classifier.distribution(analyses),
                }
            )

        if request.text:
            return jsonable_encoder({"analysis": asdict(engine.classifier.analyze(request.text))})

        if request.mention_id:
            try:
                analysis, mention = await engine.analyze_mention(request.mention_id)
            except LookupError:
                raise HTTPException(status_code=404, detail="Mention not found")
            return jsonable_encoder({"analysis": asdict(analysis), "mention": asdict(mention)})

        raise HTTPException(status_code=422, detail="text, mention_id or batch is required")

    @app.patch("/mentions/sentiment")
    async def override_sentiment(body: SentimentOverride) -> dict[str, Any]:
        """Manually set a mention's sentiment."""
        mention = await engine.mention_service.set_sentiment(
            body.mention_id, body.sentiment, body.confidence
        )
        if mention is None:
            raise HTTPException(status_code=404, detail="Mention not found")
        return jsonable_encoder(asdict(mention))

    @app.post("/mentions/{mention_id}/flag")
    async def flag_mention(mention_id: str) -> dict[str, Any]:
        """Flag a mention for human review regardless of its score."""
        try:
            mention, priority = await engine.flag_mention(mention_id)
        except LookupError:
            raise HTTPException(status_code=404, detail="Mention not found")
        return jsonable_encoder(
            {
                "flagged": mention.is_flagged,
                "priority_score": priority.score,
                "priority_level": priority.level,
                "reasons": priority.reasons,
                "flag_reasons": mention.flag_reasons,
            }
        )

    @app.delete("/mentions/{mention_id}/flag")
    async def unflag_mention(mention_id: str) -> dict[str, Any]:
        try:
            await engine.unflag_mention(mention_id)
        except LookupError:
            raise HTTPException(status_code=404, detail="Mention not found")
        return {"message": "Mention unflagged"}

    @app.post("/mentions/{mention_id}/respond")
    async def record_response(mention_id: str, body: HumanResponse) -> dict[str, Any]:
        """Record a reviewer's response to a flagged mention."""
        try:
            mention = await engine.record_human_response(
                mention_id, body.action, notes=body.notes, response_text=body.response_text
            )
        except LookupError:
            raise HTTPException(status_code=404, detail="Mention not found")
        return jsonable_encoder(
            {"message": f"Human response recorded: {body.action.value}", "mention": asdict(mention)}
        )

    @app.get("/rules")
    async def list_rules() -> list[dict[str, Any]]:
        return [rule_to_dict(r) for r in await rules.list_rules()]

    @app.post("/rules", status_code=201)
    async def create_rule(body: RuleIn) -> dict[str, Any]:
        try:
            rule = await rules.create_rule(**body.model_dump())
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=422, detail=str(e))
        return rule_to_dict(rule)

    @app.put("/rules/{rule_id}")
    async def update_rule(rule_id: str, body: RuleUpdate) -> dict[str, Any]:
        try:
            rule = await rules.update_rule(rule_id, **body.model_dump(exclude_unset=True, exclude_none=True))
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=422, detail=str(e))
        if rule is None:
            raise HTTPException(status_code=404, detail="Rule not found")
        return rule_to_dict(rule)

    @app.get("/rules/{rule_id}/throttle")
    async def rule_throttle(rule_id: str) -> dict[str, Any]:
        """Current hourly and daily usage of a rule's send limits."""
        rule = await rules.get_rule(rule_id)
        if rule is None:
            raise HTTPException(status_code=404, detail="Rule not found")
        return jsonable_encoder(asdict(await engine.throttle_guard.status(rule)))

    @app.delete("/rules/{rule_id}", status_code=204)
    async def delete_rule(rule_id: str) -> Response:
        if not await rules.delete_rule(rule_id):
            raise HTTPException(status_code=404, detail="Rule not found")
        return Response(status_code=204)

    return app
