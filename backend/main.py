from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import hmac
import uuid

import anthropic
import httpx
import structlog
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_settings
from logging_config import setup_logging
from models import (
    ExtractTaskRequest,
    ExtractedTask,
    ProgressLogCreate,
    Project,
    ProjectCreate,
    Task,
    TaskCreate,
    TaskUpdate,
)
import database
from database import (
    TaskNotFoundError,
    create_project_db,
    create_task_db,
    delete_project_db,
    delete_task_db,
    get_all_projects,
    get_all_tags,
    get_all_tasks,
    get_task_db,
    log_progress_db,
    update_task_db,
)
from dashboard import Dashboard, build_dashboard
from extraction import ExtractionError, extract_task_from_url
from reminders import ReminderEvaluator
from scheduler import ReminderScheduler
from telegram import TelegramChannel, send_test_message

settings = get_settings()
setup_logging(settings.log_format, settings.log_level)
log = structlog.get_logger()

channel = TelegramChannel(
    settings.telegram_bot_token,
    settings.telegram_chat_id,
    timeout=settings.reminders.dispatch_timeout_seconds,
)
# Looked up on each call so tests can point the store at a temp database
evaluator = ReminderEvaluator(
    lambda now: database.list_active_tasks(now),
    channel,
    settings.reminders,
)
scheduler = ReminderScheduler(evaluator, settings.reminders.poll_interval_seconds)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup
    database.init_db()
    if settings.reminders.loop_enabled:
        scheduler.start()
    yield
    # Shutdown
    await scheduler.stop()

app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Tasks
@app.get("/tasks")
def get_tasks() -> list[Task]:
    return get_all_tasks()


@app.post("/tasks")
def create_task(task_data: TaskCreate) -> Task:
    task_id = str(uuid.uuid4())
    return create_task_db(
        task_id,
        task_data.title,
        task_data.description,
        task_data.due_date,
        task_data.project_id,
        task_data.tags,
        task_data.recurrence,
        task_data.goal,
    )


@app.get("/tasks/{task_id}")
def get_task(task_id: str) -> Task:
    task = get_task_db(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.patch("/tasks/{task_id}")
def update_task(task_id: str, task_data: TaskUpdate) -> Task:
    # Only fields present in the request body are applied; explicit nulls clear
    result = update_task_db(task_id, **task_data.model_dump(exclude_unset=True))
    if not result:
        raise HTTPException(status_code=404, detail="Task not found")
    return result


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str) -> dict:
    if not delete_task_db(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "deleted"}


@app.post("/tasks/{task_id}/progress")
def log_progress(task_id: str, progress: ProgressLogCreate) -> Task:
    """Add to the task's progress for a day (today when no date is given)."""
    date = progress.date or datetime.now().strftime("%Y-%m-%d")
    try:
        return log_progress_db(task_id, date, progress.value)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.post("/tasks/extract")
async def extract_task(request: ExtractTaskRequest) -> ExtractedTask:
    """Summarize a web page into task form fields."""
    if not settings.anthropic_api_key:
        raise HTTPException(status_code=503, detail="API key not configured")

    client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    headers = {"User-Agent": "Mozilla/5.0 (compatible; TaskZen/1.0)"}
    async with httpx.AsyncClient(timeout=15.0, headers=headers) as http_client:
        try:
            return await extract_task_from_url(
                request.url, client, http_client, model=settings.anthropic_model
            )
        except ExtractionError as e:
            raise HTTPException(status_code=502, detail=str(e))


# Projects and tags
@app.get("/projects")
def get_projects() -> list[Project]:
    return get_all_projects()


@app.post("/projects")
def create_project(project_data: ProjectCreate) -> Project:
    return create_project_db(str(uuid.uuid4()), project_data.name)


@app.delete("/projects/{project_id}")
def delete_project(project_id: str) -> dict:
    if not delete_project_db(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    return {"status": "deleted"}


@app.get("/tags")
def get_tags() -> list[str]:
    return get_all_tags()


@app.get("/dashboard")
def get_dashboard() -> Dashboard:
    return build_dashboard(get_all_tasks(), get_all_projects(), datetime.now().date())


# Reminders
def is_authorized(authorization: Optional[str]) -> bool:
    """Check a Bearer token against CRON_SECRET. With no secret set, nothing is authorized."""
    if not settings.cron_secret or not authorization:
        return False
    expected = f"Bearer {settings.cron_secret}"
    return hmac.compare_digest(authorization.encode(), expected.encode())


@app.post("/cron/reminders")
async def run_reminders(authorization: Optional[str] = Header(default=None)):
    log.info("cron_reminders_triggered", at=datetime.now().isoformat())
    if not is_authorized(authorization):
        log.error("cron_unauthorized")
        return JSONResponse(status_code=401, content={"success": False, "error": "Unauthorized"})

    result = await evaluator.run_cycle(datetime.now())
    if not result.success:
        return JSONResponse(status_code=500, content={"success": False, "error": result.error})
    return {
        "success": True,
        "checked": result.checked,
        "sent": result.sent,
        "failed": result.failed,
    }


@app.get("/cron/reminders")
def reminders_info() -> dict:
    return {
        "message": "This endpoint is for a POST cron job. "
                   "Please trigger it with a POST request and the correct secret."
    }


@app.post("/notifications/test")
async def test_notification() -> dict:
    return await send_test_message(channel)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
