"""
Pipeline stages: onboarding -> perform-audit -> generate-report, with
process-ai as deferred enrichment.

Each stage is an ``async def stage(ctx, body) -> dict`` that is exposed over
HTTP by ``wrapper.serve_with_notification``. Stages hand off to the next one
by recording a durable pointer on the job and firing a background trigger;
they never wait for the next stage.
"""
import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import sessionmaker

from config import ConfigurationError, Settings
from database import RecordStore, utcnow
from dispatch import BackgroundDispatcher, StageTrigger
from job_store import JobStatus, JobStore, is_terminal
from models import AuditRequest, JobScopedRequest, OnboardingRequest, PageCritique
from monitoring import pages_audited
from security import API_KEY_NAME, validate_site_url
from utils.ai_client import AIClient, ParseError
from utils.content import extract_page_content
from utils.http import ClientFactory, build_client_factory, fetch_with_timeout
from utils.notifier import Notifier, build_notifier
from utils.scoring import calculate_scores, round_half_up
from utils.sitemap import discover_pages
from wrapper import StageValidationError

logger = logging.getLogger(__name__)

STAGE_ONBOARDING = "onboarding"
STAGE_AUDIT = "perform-audit"
STAGE_PROCESS_AI = "process-ai"
STAGE_REPORT = "generate-report"

REPORT_ONBOARDING = "Onboarding"
REPORT_WEEKLY_AUDIT = "Weekly Audit"

OUTCOME_AUDITED = "audited"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"

T = TypeVar("T")


class StageError(RuntimeError):
    """Fatal stage failure; surfaces as HTTP 500."""


@dataclass
class PipelineContext:
    settings: Settings
    records: RecordStore
    jobs: JobStore
    notifier: Notifier
    dispatcher: BackgroundDispatcher
    trigger: StageTrigger
    client_factory: ClientFactory
    ai: Optional[AIClient] = None

    def require_ai(self) -> AIClient:
        if self.ai is None:
            key = "groq_api_key" if self.settings.ai_provider == "groq" else "openai_api_key"
            self.settings.require(key)
            raise ConfigurationError("AI client is not configured")
        return self.ai

    async def db(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run a blocking store call on a worker thread so the event loop keeps serving."""
        return await asyncio.to_thread(fn, *args, **kwargs)


def build_context(settings: Settings, session_factory: sessionmaker,
                  ai: Optional[AIClient] = None, notifier: Optional[Notifier] = None,
                  transport: Optional[httpx.AsyncBaseTransport] = None) -> PipelineContext:
    """Assemble the collaborators every stage receives; called once at startup."""
    records = RecordStore(session_factory)
    dispatcher = BackgroundDispatcher()
    client_factory = build_client_factory(
        settings.user_agent,
        timeout=settings.fetch_timeout_seconds,
        max_connections=max(settings.audit_chunk_size, 1) * 2,
        transport=transport,
    )
    trigger = StageTrigger(
        dispatcher,
        settings.functions_base_url,
        settings.api_key,
        client_factory,
        api_key_name=API_KEY_NAME,
        timeout=settings.time_budget_seconds + 30,
    )
    return PipelineContext(
        settings=settings,
        records=records,
        jobs=JobStore(records),
        notifier=notifier if notifier is not None else build_notifier(settings),
        dispatcher=dispatcher,
        trigger=trigger,
        client_factory=client_factory,
        ai=ai if ai is not None else AIClient.from_settings(settings),
    )


def parse_request(schema: Type[BaseModel], body: Dict[str, Any]):
    try:
        return schema.model_validate(body)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise StageValidationError(f"Missing or invalid field(s): {', '.join(fields)}")


def initial_cursor() -> Dict[str, Any]:
    return {"urls": [], "current_index": 0, "sitemap_fetched": False}


async def chain(ctx: PipelineContext, job_id: Optional[str], stage: str, payload: Dict[str, Any]) -> None:
    """Record the next stage on the job, then fire it without waiting."""
    if job_id:
        await ctx.db(ctx.jobs.set_next_stage, job_id, stage, payload)
    ctx.trigger.fire(stage, payload)


async def save_report(ctx: PipelineContext, project_id: str, job_id: Optional[str], report_type: str,
                      title: str, content: Dict[str, Any]) -> Dict[str, Any]:
    row = {
        "project_id": project_id,
        "job_id": job_id,
        "report_type": report_type,
        "title": title,
        "content": content,
        "generated_at": utcnow(),
    }
    if job_id:
        # One report per (project, job, type), however often the stage is re-triggered
        return await ctx.db(ctx.records.upsert, "reports", row,
                            conflict_key=["project_id", "job_id", "report_type"])
    return await ctx.db(ctx.records.insert, "reports", row)


def critique_prompt(page: Dict[str, Any]) -> str:
    return (
        'Analyze this page metadata for SEO issues in JSON format: '
        '{ "critique": "...", "recommendations": ["..."] }\n'
        f"Title: {page.get('title')}\n"
        f"Description: {page.get('meta_description')}\n"
        f"H1: {page.get('h1')}\n"
        f"Word Count: {page.get('word_count')}"
    )


async def critique_page(ctx: PipelineContext, job_id: Optional[str], function_name: str,
                        page: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Ask the AI for a page critique; returns (ai_status, ai_analysis)."""
    url = page.get("url")
    try:
        result = await ctx.require_ai().generate_model(
            critique_prompt(page), PageCritique, model=ctx.settings.ai_critique_model
        )
    except Exception as e:
        logger.error(f"AI analysis failed for {url}: {e}")
        if job_id:
            await ctx.db(ctx.jobs.log, job_id, function_name, "error", f"AI failure for {url}: {e}")
        return "failed", None

    if isinstance(result, ParseError):
        if job_id:
            await ctx.db(ctx.jobs.log, job_id, function_name, "error", f"AI failure for {url}: {result.cause}",
                         {"raw": result.raw[:500]})
        return "failed", None
    return "completed", result.value.model_dump()


async def onboarding(ctx: PipelineContext, body: Dict[str, Any]) -> Dict[str, Any]:
    request = parse_request(OnboardingRequest, body)
    ctx.settings.require("functions_base_url")

    project = await ctx.db(ctx.records.select_one, "projects", {"id": request.project_id})
    if not project:
        raise StageError(f"Project not found: {request.project_id}")
    if not validate_site_url(project.get("url")):
        raise StageError(f"Project {request.project_id} has no valid site URL")

    logger.info(f"Starting onboarding for project: {project['name']} ({project['url']})")

    job = await ctx.db(ctx.jobs.create_job, request.project_id, job_type=STAGE_ONBOARDING,
                       config={"url": project["url"]})
    job_id = job["id"]
    await ctx.db(ctx.jobs.checkpoint, job_id, initial_cursor(), {"processed": 0, "total": 0})
    await ctx.db(ctx.jobs.log, job_id, STAGE_ONBOARDING, "info", f"Onboarding started for {project['name']}")

    await chain(ctx, job_id, STAGE_AUDIT, {
        "project_id": request.project_id,
        "url": project["url"],
        "job_id": job_id,
    })

    welcome = await welcome_message(ctx, project, job_id)
    return {"success": True, "message": "Onboarding started", "job_id": job_id, "welcome": welcome}


async def welcome_message(ctx: PipelineContext, project: Dict[str, Any], job_id: str) -> Optional[str]:
    """Best-effort AI welcome note, saved as the onboarding report."""
    if ctx.ai is None:
        return None

    prompt = (
        f"Project: {project['name']}\n"
        f"Client URL: {project['url']}\n"
        f"Description: {project.get('description') or 'N/A'}\n\n"
        "Generate a brief, professional welcome message and a summary of what the "
        "SEO onboarding process will involve."
    )
    try:
        message = await ctx.ai.generate(prompt, system_context="You are an SEO onboarding specialist.")
        await save_report(ctx, project["id"], job_id, REPORT_ONBOARDING, f"Onboarding: {project['name']}", {
            "message": message,
            "status": "Audit Initiated",
            "timestamp": utcnow().isoformat(),
        })
        return message
    except Exception as e:
        logger.warning(f"Welcome message failed for project {project['id']}: {e}")
        await ctx.db(ctx.jobs.log, job_id, STAGE_ONBOARDING, "warn", f"Welcome message failed: {e}")
        return None


async def perform_audit(ctx: PipelineContext, body: Dict[str, Any]) -> Dict[str, Any]:
    request = parse_request(AuditRequest, body)
    job_id = request.job_id

    existing = await ctx.db(ctx.jobs.get_job, job_id)
    if existing and is_terminal(existing["status"]):
        # Duplicate trigger for finished work; a re-run needs a reset or a new job
        await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "warn", f"Ignoring trigger for {existing['status']} job")
        return {"success": True, "status": existing["status"], "skipped": True}

    site_url = request.url or ((existing or {}).get("config") or {}).get("url")
    if not site_url:
        project = await ctx.db(ctx.records.select_one, "projects", {"id": request.project_id})
        site_url = project.get("url") if project else None
    if not validate_site_url(site_url):
        raise StageValidationError("Missing or invalid field(s): url")

    await ctx.db(ctx.jobs.create_or_get_job, job_id, project_id=request.project_id, job_type="audit",
                 config={"url": site_url})
    await ctx.db(ctx.jobs.claim_stage, job_id, STAGE_AUDIT)

    try:
        return await run_audit(ctx, job_id, request.project_id, site_url)
    except Exception as e:
        await ctx.db(ctx.jobs.update_status, job_id, JobStatus.FAILED, str(e))
        await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "error", f"Audit failed: {e}")
        raise


async def run_audit(ctx: PipelineContext, job_id: str, project_id: str, site_url: str) -> Dict[str, Any]:
    settings = ctx.settings
    started = time.monotonic()
    chunk_size = max(settings.audit_chunk_size, 1)

    state = await ctx.db(ctx.jobs.get_state, job_id)
    cursor = {**initial_cursor(), **((state or {}).get("cursor") or {})}

    if not await ctx.db(ctx.jobs.update_status, job_id, JobStatus.PROCESSING):
        job = await ctx.db(ctx.jobs.get_job, job_id)
        if job and is_terminal(job["status"]):
            return {"success": True, "status": job["status"], "skipped": True}
    await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "info",
                 f"Starting audit run. Progress: {cursor['current_index']}")

    counts: Counter = Counter()
    reason = None

    async with ctx.client_factory() as client:
        if not cursor["sitemap_fetched"]:
            discovered = await discover_pages(client, site_url, settings.fetch_timeout_seconds,
                                              settings.sitemap_max_urls)
            cursor.update(urls=discovered, sitemap_fetched=True, current_index=0)
            await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "info", f"Sitemap resolved: {len(discovered)} URLs.",
                         {"site_url": site_url})
            await ctx.db(ctx.jobs.checkpoint, job_id, cursor, {"processed": 0, "total": len(discovered)})

        urls: List[str] = cursor["urls"]
        index: int = cursor["current_index"]
        processed_this_run = 0

        while index < len(urls):
            if processed_this_run >= settings.max_pages_per_run:
                reason = f"Max pages per run reached ({settings.max_pages_per_run})"
                break
            if time.monotonic() - started > settings.time_budget_seconds:
                reason = f"Time budget exceeded ({settings.time_budget_seconds}s)"
                break

            size = min(chunk_size, settings.max_pages_per_run - processed_this_run)
            chunk = urls[index:index + size]
            outcomes = await asyncio.gather(
                *(audit_page(ctx, client, job_id, project_id, site_url, url) for url in chunk),
                return_exceptions=True,
            )
            for url, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Unexpected error auditing {url}: {outcome}")
                    outcome = OUTCOME_FAILED
                counts[outcome] += 1

            index += len(chunk)
            processed_this_run += len(chunk)
            cursor["current_index"] = index
            await ctx.db(ctx.jobs.checkpoint, job_id, cursor, {"processed": index, "total": len(urls)})

    pages = {key: counts[key] for key in (OUTCOME_AUDITED, OUTCOME_SKIPPED, OUTCOME_FAILED)}

    if index < len(urls):
        await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "info", f"{reason}. Saving state.", pages)
        await ctx.db(ctx.jobs.update_status, job_id, JobStatus.PARTIAL)
        await chain(ctx, job_id, STAGE_AUDIT, {"project_id": project_id, "job_id": job_id, "url": site_url})
        return {"success": True, "status": "partial", "next_index": index, "message": reason, "pages": pages}

    await ctx.db(ctx.jobs.checkpoint, job_id, cursor, {"processed": len(urls), "total": len(urls)})
    await ctx.db(ctx.jobs.update_status, job_id, JobStatus.COMPLETED)
    await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "info", f"Audit completed: {len(urls)} URLs.", pages)

    await chain(ctx, job_id, STAGE_REPORT, {"project_id": project_id, "job_id": job_id})
    if ctx.ai is not None and await ctx.db(ctx.records.count, "pages",
                                           {"project_id": project_id, "ai_status": "pending"}):
        ctx.trigger.fire(STAGE_PROCESS_AI, {"project_id": project_id, "job_id": job_id})

    return {"success": True, "status": "completed", "processed": len(urls), "pages": pages}


async def audit_page(ctx: PipelineContext, client: httpx.AsyncClient, job_id: str,
                     project_id: str, site_url: str, url: str) -> str:
    """Fetch, extract, score and persist one page; returns the outcome."""
    settings = ctx.settings
    try:
        response = await fetch_with_timeout(client, url, settings.fetch_timeout_seconds)
    except Exception as e:
        logger.warning(f"Failed to fetch {url}: {e}")
        await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "warn",
                     f"Failed to fetch {url}: {e.__class__.__name__} {e}")
        pages_audited.labels(outcome=OUTCOME_SKIPPED).inc()
        return OUTCOME_SKIPPED

    if not response.is_success:
        await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "warn", f"Skipping {url}: HTTP {response.status_code}")
        pages_audited.labels(outcome=OUTCOME_SKIPPED).inc()
        return OUTCOME_SKIPPED

    facts = extract_page_content(response.text, base_url=site_url)
    if facts is None:
        await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "warn", f"Skipping {url}: could not parse HTML")
        pages_audited.labels(outcome=OUTCOME_SKIPPED).inc()
        return OUTCOME_SKIPPED

    scores = calculate_scores(facts)
    row: Dict[str, Any] = {
        "project_id": project_id,
        "url": url,
        "title": facts.title,
        "meta_description": facts.description,
        "h1": facts.h1,
        "word_count": facts.word_count,
        "technical_score": scores.technical_score,
        "content_score": scores.content_score,
        "seo_score": scores.seo_score,
        "on_page_data": {**facts.to_dict(), "issues": scores.issues},
        "ai_status": "pending",
        "last_audited": utcnow(),
    }

    if settings.audit_inline_ai and ctx.ai is not None:
        status, analysis = await critique_page(ctx, job_id, STAGE_AUDIT, row)
        row["ai_status"] = status
        if analysis is not None:
            row["ai_analysis"] = analysis

    try:
        await ctx.db(ctx.records.upsert, "pages", row, conflict_key=["project_id", "url"])
    except Exception as e:
        logger.error(f"Failed to save page {url}: {e}")
        await ctx.db(ctx.jobs.log, job_id, STAGE_AUDIT, "error", f"Failed to save page {url}: {e}")
        pages_audited.labels(outcome=OUTCOME_FAILED).inc()
        return OUTCOME_FAILED

    pages_audited.labels(outcome=OUTCOME_AUDITED).inc()
    return OUTCOME_AUDITED


async def process_ai(ctx: PipelineContext, body: Dict[str, Any]) -> Dict[str, Any]:
    request = parse_request(JobScopedRequest, body)
    ctx.require_ai()
    project_id, job_id = request.project_id, request.job_id

    pending = {"project_id": project_id, "ai_status": "pending"}
    pages = await ctx.db(ctx.records.select, "pages", pending, limit=ctx.settings.ai_batch_size)
    if not pages:
        return {"success": True, "message": "No pending AI tasks found.", "processed": 0}

    if job_id:
        await ctx.db(ctx.jobs.log, job_id, STAGE_PROCESS_AI, "info", f"Processing AI for {len(pages)} pages.")

    statuses: Counter = Counter()
    size = max(ctx.settings.audit_chunk_size, 1)
    for start in range(0, len(pages), size):
        chunk = pages[start:start + size]
        results = await asyncio.gather(*(enrich_page(ctx, job_id, page) for page in chunk),
                                       return_exceptions=True)
        for page, result in zip(chunk, results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected error enriching {page.get('url')}: {result}")
                result = "failed"
            statuses[result] += 1

    remaining = await ctx.db(ctx.records.count, "pages", pending)
    if remaining:
        ctx.trigger.fire(STAGE_PROCESS_AI, {"project_id": project_id, "job_id": job_id})

    return {
        "success": True,
        "processed": len(pages),
        "completed": statuses["completed"],
        "failed": statuses["failed"],
        "remaining": remaining,
    }


async def enrich_page(ctx: PipelineContext, job_id: Optional[str], page: Dict[str, Any]) -> str:
    url = page.get("url")
    try:
        await ctx.db(ctx.records.update, "pages", {"ai_status": "processing"}, {"id": page["id"]})
        status, analysis = await critique_page(ctx, job_id, STAGE_PROCESS_AI, page)
        patch: Dict[str, Any] = {"ai_status": status}
        if analysis is not None:
            patch["ai_analysis"] = analysis
        await ctx.db(ctx.records.update, "pages", patch, {"id": page["id"]})
        return status
    except Exception as e:
        logger.error(f"Failed to save AI analysis for {url}: {e}")
        if job_id:
            await ctx.db(ctx.jobs.log, job_id, STAGE_PROCESS_AI, "error", f"Failed to save AI analysis for {url}: {e}")
        try:
            # A page left in "processing" would never be selected again
            await ctx.db(ctx.records.update, "pages", {"ai_status": "failed"}, {"id": page["id"]})
        except Exception as mark_error:
            logger.error(f"Could not mark {url} as failed: {mark_error}")
        return "failed"


def summarize_pages(pages: List[Dict[str, Any]], low_score_threshold: int) -> Dict[str, Any]:
    scores = [page.get("seo_score") or 0 for page in pages]
    issues: Counter = Counter()
    for page in pages:
        issues.update((page.get("on_page_data") or {}).get("issues") or [])
    return {
        "avgSeoScore": round_half_up(sum(scores) / len(scores)) if scores else 0,
        "pagesAudited": len(pages),
        "lowScoringPages": [page["url"] for page in pages if (page.get("seo_score") or 0) < low_score_threshold],
        "topIssues": dict(issues.most_common(5)),
    }


async def generate_report(ctx: PipelineContext, body: Dict[str, Any]) -> Dict[str, Any]:
    request = parse_request(JobScopedRequest, body)
    ai = ctx.require_ai()
    project_id, job_id = request.project_id, request.job_id

    if job_id:
        await ctx.db(ctx.jobs.claim_stage, job_id, STAGE_REPORT)
        await ctx.db(ctx.jobs.log, job_id, STAGE_REPORT, "info", f"Generating report for project {project_id}")

    project = await ctx.db(ctx.records.select_one, "projects", {"id": project_id})
    pages = await ctx.db(ctx.records.select, "pages", {"project_id": project_id})
    if not project or not pages:
        if job_id:
            await ctx.db(ctx.jobs.log, job_id, STAGE_REPORT, "warn", "No pages found for report generation")
        raise StageError("No data found for report generation")

    metrics = summarize_pages(pages, ctx.settings.low_score_threshold)
    prompt = (
        "Generate a Weekly SEO Audit Report (HTML format).\n"
        f"Project: {project['name']} ({project['url']})\n"
        f"Total Pages Audited: {metrics['pagesAudited']}\n"
        f"Average SEO Score: {metrics['avgSeoScore']}/100\n\n"
        f"Issues found on: {', '.join(metrics['lowScoringPages']) or 'none'}\n"
        f"Most common issues: {', '.join(metrics['topIssues']) or 'none'}\n\n"
        "Structure the report with Executive Summary, Technical Analysis, and 3-5 "
        "Actionable Recommendations.\nReturn ONLY valid HTML inside a div."
    )

    try:
        report_html = await ai.generate(prompt, system_context="You are a senior SEO consultant.")
        report = await save_report(
            ctx, project_id, job_id, REPORT_WEEKLY_AUDIT,
            f"Weekly Audit - {date.today().isoformat()}",
            {"html": report_html, "metrics": metrics},
        )
    except Exception as e:
        if job_id:
            await ctx.db(ctx.jobs.log, job_id, STAGE_REPORT, "error", f"Report generation failed: {e}")
        raise

    if job_id:
        await ctx.db(ctx.jobs.log, job_id, STAGE_REPORT, "info", "Report successfully generated and saved.")
    return {"success": True, "status": "completed", "report_id": report["id"], "metrics": metrics}


STAGES = {
    STAGE_ONBOARDING: onboarding,
    STAGE_AUDIT: perform_audit,
    STAGE_PROCESS_AI: process_ai,
    STAGE_REPORT: generate_report,
}
