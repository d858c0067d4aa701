from chartdeck.services.aggregator import DashboardAggregator
from chartdeck.services.cache import ChartResultCache
from chartdeck.services.chart_data import ChartDataService, ChartExecutionPlan
from chartdeck.services.datasets import DatasetQueryExecutor
from chartdeck.services.exports import ChartExporter
from chartdeck.services.jobs import JobTracker
from chartdeck.services.permissions import PermissionService
from chartdeck.services.processor import ChartDataProcessor

__all__ = [
    "ChartDataProcessor",
    "ChartDataService",
    "ChartExecutionPlan",
    "ChartExporter",
    "ChartResultCache",
    "DashboardAggregator",
    "DatasetQueryExecutor",
    "JobTracker",
    "PermissionService",
]
