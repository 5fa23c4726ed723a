from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.database import Base
from stockledger.models.movement import utcnow


class StockSnapshot(Base):
    """Materialized current stock of one item, written only by the ledger engine."""

    __tablename__ = "stock_snapshots"
    __table_args__ = (CheckConstraint("current_stock >= 0", name="ck_snapshot_non_negative"),)

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    initial_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # UPDATE ... WHERE version = :old; zero rows matched raises StaleDataError
    __mapper_args__ = {"version_id_col": version}
