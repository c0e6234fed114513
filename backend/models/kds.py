"""
KDS (Kitchen Display System) Models

Point-of-sale tables read and updated by the kitchen display. Table and
column names follow the POS database schema, so the attributes map onto
upper-case column names.
"""

from datetime import datetime
from sqlalchemy import String, DateTime, Text, Boolean, Integer, Float
from sqlalchemy.orm import Mapped, mapped_column
from database import Base


class KitchenOrderLine(Base):
    """
    One line of a kitchen ticket as sent by the POS.

    Lines sharing MAIN_ORDER_NO form one ticket. A line is active until
    FINISHED is set by the finish-order command.
    """
    __tablename__ = "DB_POS_ORDER_KDS"

    auto_no: Mapped[int] = mapped_column("AUTO_NO", primary_key=True, autoincrement=True)
    cat_code: Mapped[int | None] = mapped_column("CAT_CODE", Integer, nullable=True, index=True)
    main_order_no: Mapped[int | None] = mapped_column("MAIN_ORDER_NO", Integer, nullable=True, index=True)
    order_no: Mapped[int | None] = mapped_column("ORDER_NO", Integer, nullable=True)
    line_no: Mapped[int | None] = mapped_column("LINE_NO", Integer, nullable=True)
    item_code: Mapped[str | None] = mapped_column("ITEM_CODE", String(50), nullable=True)
    item_type: Mapped[str | None] = mapped_column("ITEM_TYPE", String(5), nullable=True)  # I = main, M = modifier
    qty: Mapped[float | None] = mapped_column("QTY", Float, nullable=True)

    table_id: Mapped[int | None] = mapped_column("TABLE_ID", Integer, nullable=True)
    table_description: Mapped[str | None] = mapped_column("TABLE_DESCRIPTION", String(100), nullable=True)
    dep_code: Mapped[str | None] = mapped_column("DEP_CODE", String(20), nullable=True)
    order_comments: Mapped[str | None] = mapped_column("ORDER_COMMENTS", Text, nullable=True)

    # Timing
    order_time: Mapped[datetime | None] = mapped_column("ORDER_TIME", DateTime, nullable=True)
    # Actual minutes taken, written when the order is finished
    time_to_finish: Mapped[float | None] = mapped_column("TIME_TO_FINISH", Float, nullable=True)

    # Completion
    finished: Mapped[bool | None] = mapped_column("FINISHED", Boolean, nullable=True, index=True)
    finish_time: Mapped[datetime | None] = mapped_column("FINISH_TIME", DateTime, nullable=True)
    finish_by: Mapped[str | None] = mapped_column("FINISH_BY", String(100), nullable=True)
    late: Mapped[int | None] = mapped_column("LATE", Integer, nullable=True)


class ItemMaster(Base):
    """Menu items with their standard preparation time in minutes."""
    __tablename__ = "DB_ITEM_MASTER"

    item_code: Mapped[str] = mapped_column("ITEM_CODE", String(50), primary_key=True)
    item_name: Mapped[str | None] = mapped_column("ITEM_NAME", String(255), nullable=True)
    item_name2: Mapped[str | None] = mapped_column("ITEM_NAME2", String(255), nullable=True)  # Localized name
    time_to_finish: Mapped[float | None] = mapped_column("TIME_TO_FINISH", Float, nullable=True)


class Department(Base):
    __tablename__ = "DB_POS_DEPARTMENTS"

    dept_code: Mapped[str] = mapped_column("DEPT_CODE", String(20), primary_key=True)
    dept_name: Mapped[str | None] = mapped_column("DEPT_NAME", String(255), nullable=True)
    dept_name_ar: Mapped[str | None] = mapped_column("DEPT_NAME_AR", String(255), nullable=True)


class Category(Base):
    """POS categories; those flagged KDS can be selected on a display."""
    __tablename__ = "DB_POS_CATEGORY"

    cat_code: Mapped[int] = mapped_column("CAT_CODE", Integer, primary_key=True)
    cat_name: Mapped[str | None] = mapped_column("CAT_NAME", String(255), nullable=True)
    kds: Mapped[bool] = mapped_column("KDS", Boolean, default=False)
