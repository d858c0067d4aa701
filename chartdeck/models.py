from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from chartdeck.database import Base


class Workspace(Base):
    """Tenant boundary: everything below is scoped by workspace_id."""
    __tablename__ = "workspaces"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("WorkspaceMember", back_populates="workspace", cascade="all, delete-orphan")


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    role = Column(String(32), nullable=False, default="viewer")  # viewer, editor, admin, owner
    created_at = Column(DateTime, default=datetime.utcnow)

    workspace = relationship("Workspace", back_populates="members")

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="workspace_member_unique"),
    )


class DataSource(Base):
    """Connection configuration to an external data store."""
    __tablename__ = "datasources"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    connection_type = Column(String(64), nullable=False, default="postgres")  # postgres, sqlalchemy, inline
    connection_url = Column(Text, nullable=True)  # Encrypted
    connection_config = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, index=True)
    created_by_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    datasets = relationship("Dataset", back_populates="datasource", cascade="all, delete-orphan")


class Dataset(Base):
    """Named, reusable query definition against a datasource."""
    __tablename__ = "datasets"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False)
    datasource_id = Column(Integer, ForeignKey("datasources.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    query_config = Column(JSON, nullable=False, default=dict)
    schema_config = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    datasource = relationship("DataSource", back_populates="datasets")

    __table_args__ = (
        Index("dataset_workspace_idx", "workspace_id"),
        Index("dataset_datasource_idx", "datasource_id"),
    )


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    dashboards = relationship("Dashboard", back_populates="category")


class Dashboard(Base):
    __tablename__ = "dashboards"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    name = Column(String(255), nullable=False)
    display_name = Column(String(255))
    description = Column(Text)
    config_json = Column(JSON, nullable=False, default=dict)
    theme_config = Column(JSON, nullable=False, default=dict)
    layout_config = Column(JSON, nullable=False, default=dict)
    global_filters = Column(JSON, nullable=False, default=list)
    filter_connections = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    is_public = Column(Boolean, default=False)
    is_featured = Column(Boolean, default=False)
    status = Column(String(32), nullable=False, default="draft")  # draft, published, archived
    view_count = Column(Integer, nullable=False, default=0)
    last_viewed_at = Column(DateTime, nullable=True)
    created_by_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    category = relationship("Category", back_populates="dashboards")
    charts = relationship(
        "Chart",
        back_populates="dashboard",
        order_by="Chart.order_index",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("dashboard_workspace_status_idx", "workspace_id", "status"),
        Index("dashboard_category_idx", "category_id"),
    )


class Chart(Base):
    __tablename__ = "charts"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False)
    dashboard_id = Column(Integer, ForeignKey("dashboards.id"), nullable=True)
    name = Column(String(255), nullable=False)
    display_name = Column(String(255))
    description = Column(Text)
    chart_type = Column(String(50), nullable=False)  # table, bar, line, pie, kpi, etc
    dataset_ids = Column(JSON, nullable=False, default=list)
    query_config = Column(JSON, nullable=False, default=dict)
    visualization_config = Column(JSON, nullable=False, default=dict)
    filters = Column(JSON, nullable=False, default=list)
    position_json = Column(JSON, nullable=False, default=dict)
    order_index = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, index=True)
    last_executed_at = Column(DateTime, nullable=True)
    execution_count = Column(Integer, nullable=False, default=0)
    last_execution_ms = Column(Integer, nullable=True)
    created_by_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    dashboard = relationship("Dashboard", back_populates="charts")

    __table_args__ = (
        Index("chart_dashboard_idx", "dashboard_id"),
        Index("chart_workspace_idx", "workspace_id"),
    )
