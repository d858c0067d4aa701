from chartdeck.api.routes import catalog, charts, dashboards, health, jobs

__all__ = ["catalog", "charts", "dashboards", "health", "jobs"]
