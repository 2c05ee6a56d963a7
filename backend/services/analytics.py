from sqlalchemy.orm import Session
from backend.models import JournalEntry
import pandas as pd

COLUMNS = ["user_id", "date", "status", "pnl", "validation_result"]


class AnalyticsService:
    """Read-only admin aggregates over the trade journal."""

    def __init__(self, db: Session):
        self.db = db

    def _frame(self) -> pd.DataFrame:
        rows = self.db.query(
            JournalEntry.user_id, JournalEntry.date, JournalEntry.status,
            JournalEntry.pnl, JournalEntry.validation_result
        ).all()
        df = pd.DataFrame([tuple(r) for r in rows], columns=COLUMNS)
        df["date"] = pd.to_datetime(df["date"])
        df["pnl"] = pd.to_numeric(df["pnl"]).fillna(0.0)
        return df

    @staticmethod
    def _win_rate(closed: pd.DataFrame) -> float:
        if closed.empty:
            return 0.0
        return round(float((closed["pnl"] > 0).mean() * 100), 2)

    def overview(self) -> dict:
        df = self._frame()
        closed = df[df["status"] == "closed"]
        return {
            "total_trades": int(len(df)),
            "closed_trades": int(len(closed)),
            "total_pnl": round(float(closed["pnl"].sum()), 2),
            "win_rate": self._win_rate(closed),
            "active_students": int(df["user_id"].nunique()),
        }

    def student_performance(self) -> list:
        df = self._frame()
        if df.empty:
            return []
        stats = []
        for user_id, group in df.groupby("user_id"):
            closed = group[group["status"] == "closed"]
            stats.append({
                "user_id": user_id,
                "trades": int(len(group)),
                "closed_trades": int(len(closed)),
                "total_pnl": round(float(closed["pnl"].sum()), 2),
                "win_rate": self._win_rate(closed),
            })
        return sorted(stats, key=lambda x: x["total_pnl"], reverse=True)

    def validation_breakdown(self) -> dict:
        df = self._frame()
        counts = df["validation_result"].dropna().value_counts()
        return {result: int(counts.get(result, 0)) for result in ("approved", "rejected", "warning")}

    def rule_violations(self, months: int = 6) -> list:
        """Trades the assistant rejected, per calendar month (most recent `months`)."""
        df = self._frame()
        rejected = df[df["validation_result"] == "rejected"]
        if rejected.empty:
            return []
        per_month = rejected.groupby(rejected["date"].dt.strftime("%Y-%m")).size().sort_index()
        return [{"month": m, "violations": int(c)} for m, c in per_month.tail(months).items()]

    @staticmethod
    def _penalties(df: pd.DataFrame) -> pd.DataFrame:
        """Rejected and warning verdicts only, with one indicator column per kind."""
        flagged = df[df["validation_result"].isin(["rejected", "warning"])].copy()
        flagged["rejected"] = (flagged["validation_result"] == "rejected").astype(int)
        flagged["warning"] = (flagged["validation_result"] == "warning").astype(int)
        return flagged

    def student_penalties(self) -> list:
        flagged = self._penalties(self._frame())
        if flagged.empty:
            return []
        per_user = flagged.groupby("user_id")[["rejected", "warning"]].sum()
        stats = [
            {
                "user_id": user_id,
                "rejected_count": int(row["rejected"]),
                "warning_count": int(row["warning"]),
                "total_penalties": int(row["rejected"] + row["warning"]),
            }
            for user_id, row in per_user.iterrows()
        ]
        return sorted(stats, key=lambda x: x["total_penalties"], reverse=True)

    def penalty_trends(self, months: int = 6) -> list:
        """Rejected and warning verdicts per calendar month (most recent `months`)."""
        flagged = self._penalties(self._frame())
        if flagged.empty:
            return []
        per_month = flagged.groupby(flagged["date"].dt.strftime("%Y-%m"))[["rejected", "warning"]].sum().sort_index()
        return [
            {
                "month": m,
                "rejected": int(row["rejected"]),
                "warning": int(row["warning"]),
                "total": int(row["rejected"] + row["warning"]),
            }
            for m, row in per_month.tail(months).iterrows()
        ]

    def pnl_history(self) -> list:
        df = self._frame()
        closed = df[df["status"] == "closed"]
        if closed.empty:
            return []
        daily = closed.groupby(closed["date"].dt.strftime("%Y-%m-%d"))["pnl"].sum().sort_index()
        cumulative = daily.cumsum()
        return [
            {"date": d, "pnl": round(float(daily[d]), 2), "cumulative_pnl": round(float(cumulative[d]), 2)}
            for d in daily.index
        ]
