from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, JSON, Text
from datetime import datetime
from backend.db import Base

class TradeRule(Base):
    __tablename__ = "trade_rules"

    id = Column(Integer, primary_key=True, index=True)
    # NULL owner = global rule, applied to every student
    user_id = Column(String, nullable=True, index=True)
    text = Column(Text, nullable=False)
    type = Column(String, default="general")  # "buy", "sell", "general"
    required = Column(Boolean, default=True)
    order_number = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

class JournalEntry(Base):
    __tablename__ = "journal_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    date = Column(DateTime, default=datetime.utcnow)

    pair = Column(String, nullable=True)
    type = Column(String)  # "buy" / "sell"
    entry_price = Column(Float, nullable=True)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    exit_price = Column(Float, nullable=True)
    position_size = Column(Float, nullable=True)
    pnl = Column(Float, nullable=True)
    status = Column(String, default="open")  # "open", "closed"

    notes = Column(Text, default="")
    validation_result = Column(String, nullable=True)  # "approved", "rejected", "warning"
    screenshot_url = Column(Text, nullable=True)  # data URL of the analysed chart

    emotions = Column(JSON, default=list)  # e.g. ["confident", "fomo"]
    confidence_level = Column(Integer, nullable=True)
    strategy = Column(String, nullable=True)
    time_frame = Column(String, nullable=True)
    trade_source = Column(String, default="live")  # "live", "demo", "assistant"

    created_at = Column(DateTime, default=datetime.utcnow)
