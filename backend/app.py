import json
import logging
import asyncio
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, UploadFile, File, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from backend.config import APP_NAME, CORS_ORIGINS
from backend.db import Base, engine, SessionLocal
from backend.assistant.session import (
    SessionRegistry, SessionNotFoundError, SessionBusyError,
    RulesLoadingError, EmptyMessageError, InvalidImageError,
)
from backend.assistant.validator import TradeValidator
from backend.services import rules as rule_events
from backend.services.rules import RuleRepository, RuleChange, rule_to_dict
from backend.services.journal import JournalService, entry_to_dict
from backend.services.analytics import AnalyticsService

# --- Logging & WebSockets ---
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: str):
        for connection in list(self.active_connections):
            try:
                await connection.send_text(message)
            except Exception:
                logger.warning("Dropping dead rule-change subscriber")
                self.disconnect(connection)

manager = ConnectionManager()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("TradeAssistant")

# --- Globals ---
def fetch_rules(user_id: str) -> List[dict]:
    db = SessionLocal()
    try:
        return [rule_to_dict(r) for r in RuleRepository(db).fetch_user_rules(user_id)]
    finally:
        db.close()

registry = SessionRegistry(validator=TradeValidator(), rule_fetcher=fetch_rules)
event_loop: Optional[asyncio.AbstractEventLoop] = None

def push_rule_change(change: RuleChange):
    """Forwards committed rule changes to WebSocket subscribers (called from worker threads)."""
    if event_loop is None or event_loop.is_closed():
        return
    payload = json.dumps(change._asdict())
    asyncio.run_coroutine_threadsafe(manager.broadcast(payload), event_loop)

@asynccontextmanager
async def lifespan(app: FastAPI):
    global event_loop
    logger.info(f"🚀 Starting {APP_NAME} Trade Assistant...")
    Base.metadata.create_all(bind=engine)
    event_loop = asyncio.get_running_loop()

    unsubscribers = [
        rule_events.subscribe(registry.on_rule_change),
        rule_events.subscribe(push_rule_change),
    ]
    logger.info("📡 Rule change notifications connected.")

    yield

    for unsubscribe in unsubscribers:
        unsubscribe()
    event_loop = None
    logger.info("🛑 Shutting down...")

app = FastAPI(title=f"{APP_NAME} Trade Assistant API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_session_or_404(session_id: str):
    try:
        return registry.get(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")

# --- Assistant ---
class SessionIn(BaseModel):
    user_id: str

class MessageIn(BaseModel):
    text: str = ""

@app.post("/assistant/sessions")
def create_session(params: SessionIn):
    return registry.create(params.user_id).view()

@app.get("/assistant/sessions/{session_id}")
def get_session(session_id: str):
    return get_session_or_404(session_id).view()

@app.delete("/assistant/sessions/{session_id}")
def close_session(session_id: str):
    try:
        registry.close(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "closed"}

@app.post("/assistant/sessions/{session_id}/messages")
async def send_message(session_id: str, message: MessageIn):
    session = get_session_or_404(session_id)
    try:
        await session.send(message.text)
    except EmptyMessageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (SessionBusyError, RulesLoadingError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.view()

@app.post("/assistant/sessions/{session_id}/image")
async def attach_image(session_id: str, file: UploadFile = File(...)):
    session = get_session_or_404(session_id)
    data = await file.read()
    try:
        session.attach_image(data, file.content_type)
    except InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.view()

@app.delete("/assistant/sessions/{session_id}/image")
def clear_image(session_id: str):
    session = get_session_or_404(session_id)
    session.clear_image()
    return session.view()

@app.post("/assistant/sessions/{session_id}/log-trade")
def log_trade(session_id: str):
    session = get_session_or_404(session_id)
    draft = session.take_draft()
    if draft is None:
        raise HTTPException(status_code=404, detail="No analysed trade to log")
    db = SessionLocal()
    try:
        entry = JournalService(db).log_draft(session.user_id, draft, pair=session.conversation.context.pair)
        logger.info(f"📝 Logged assistant draft {entry.id} for {session.user_id} ({draft.validation_result})")
        return entry_to_dict(entry)
    finally:
        db.close()

# --- Rules ---
class RuleIn(BaseModel):
    text: str
    type: str = Field("general", pattern="^(buy|sell|general)$")
    required: bool = True
    user_id: Optional[str] = None
    order_number: Optional[int] = None

class RuleUpdateIn(BaseModel):
    text: Optional[str] = None
    type: Optional[str] = Field(None, pattern="^(buy|sell|general)$")
    required: Optional[bool] = None
    order_number: Optional[int] = None

@app.get("/rules")
def list_rules(user_id: Optional[str] = None):
    db = SessionLocal()
    try:
        repo = RuleRepository(db)
        rules = repo.fetch_user_rules(user_id) if user_id else repo.get_all_rules()
        return [rule_to_dict(r) for r in rules]
    finally:
        db.close()

@app.post("/rules")
def create_rule(rule_in: RuleIn):
    db = SessionLocal()
    try:
        return rule_to_dict(RuleRepository(db).create_rule(**rule_in.model_dump()))
    finally:
        db.close()

@app.put("/rules/{rule_id}")
def update_rule(rule_id: int, rule_in: RuleUpdateIn):
    db = SessionLocal()
    try:
        rule = RuleRepository(db).update_rule(rule_id, **rule_in.model_dump())
        if not rule:
            raise HTTPException(status_code=404, detail="Rule not found")
        return rule_to_dict(rule)
    finally:
        db.close()

@app.delete("/rules/{rule_id}")
def delete_rule(rule_id: int):
    db = SessionLocal()
    try:
        if not RuleRepository(db).delete_rule(rule_id):
            raise HTTPException(status_code=404, detail="Rule not found")
        return {"status": "deleted"}
    finally:
        db.close()

@app.websocket("/ws/rules")
async def rules_websocket(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)

# --- Journal ---
class JournalEntryIn(BaseModel):
    user_id: str
    pair: Optional[str] = None
    type: str = Field("buy", pattern="^(buy|sell)$")
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    exit_price: Optional[float] = None
    position_size: Optional[float] = None
    pnl: Optional[float] = None
    status: str = Field("open", pattern="^(open|closed)$")
    notes: str = ""
    emotions: List[str] = Field(default_factory=list)
    confidence_level: Optional[int] = Field(None, ge=1, le=10)
    strategy: Optional[str] = None
    time_frame: Optional[str] = None
    trade_source: str = "live"

class JournalUpdateIn(BaseModel):
    pair: Optional[str] = None
    type: Optional[str] = Field(None, pattern="^(buy|sell)$")
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    position_size: Optional[float] = None
    pnl: Optional[float] = None
    status: Optional[str] = Field(None, pattern="^(open|closed)$")
    notes: Optional[str] = None
    emotions: Optional[List[str]] = None
    confidence_level: Optional[int] = Field(None, ge=1, le=10)

@app.get("/journal")
def list_journal(user_id: str, limit: int = 100):
    db = SessionLocal()
    try:
        return [entry_to_dict(e) for e in JournalService(db).get_user_entries(user_id, limit)]
    finally:
        db.close()

@app.post("/journal")
def create_journal_entry(entry_in: JournalEntryIn):
    db = SessionLocal()
    try:
        fields = entry_in.model_dump()
        user_id = fields.pop("user_id")
        return entry_to_dict(JournalService(db).create_entry(user_id, **fields))
    finally:
        db.close()

@app.put("/journal/{entry_id}")
def update_journal_entry(entry_id: int, entry_in: JournalUpdateIn):
    db = SessionLocal()
    try:
        entry = JournalService(db).update_entry(entry_id, **entry_in.model_dump())
        if not entry:
            raise HTTPException(status_code=404, detail="Journal entry not found")
        return entry_to_dict(entry)
    finally:
        db.close()

@app.delete("/journal/{entry_id}")
def delete_journal_entry(entry_id: int):
    db = SessionLocal()
    try:
        if not JournalService(db).delete_entry(entry_id):
            raise HTTPException(status_code=404, detail="Journal entry not found")
        return {"status": "deleted"}
    finally:
        db.close()

# --- Admin analytics ---
@app.get("/admin/metrics")
def admin_metrics():
    db = SessionLocal()
    try:
        svc = AnalyticsService(db)
        return {**svc.overview(), "validation": svc.validation_breakdown()}
    finally:
        db.close()

@app.get("/admin/students")
def admin_students():
    db = SessionLocal()
    try:
        return AnalyticsService(db).student_performance()
    finally:
        db.close()

@app.get("/admin/rule-violations")
def admin_rule_violations(months: int = Query(6, ge=1)):
    db = SessionLocal()
    try:
        return AnalyticsService(db).rule_violations(months)
    finally:
        db.close()

@app.get("/admin/student-penalties")
def admin_student_penalties():
    db = SessionLocal()
    try:
        return AnalyticsService(db).student_penalties()
    finally:
        db.close()

@app.get("/admin/penalty-trends")
def admin_penalty_trends(months: int = Query(6, ge=1)):
    db = SessionLocal()
    try:
        return AnalyticsService(db).penalty_trends(months)
    finally:
        db.close()

@app.get("/admin/pnl-history")
def admin_pnl_history():
    db = SessionLocal()
    try:
        return AnalyticsService(db).pnl_history()
    finally:
        db.close()

@app.get("/admin/trades")
def admin_trades(limit: int = 500):
    db = SessionLocal()
    try:
        return [entry_to_dict(e) for e in JournalService(db).get_all_entries(limit)]
    finally:
        db.close()

@app.get("/health")
def health(): return {"ok": True}

if __name__ == '__main__':
    import uvicorn
    uvicorn.run(app, host='0.0.0.0', port=8000)
