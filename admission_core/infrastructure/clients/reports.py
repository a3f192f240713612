"""Report export port consumed by the application listing export"""

from typing import Any, Dict, List, Protocol


class ReportExportPort(Protocol):
    async def export(self, tenant_id: str, report_name: str, rows: List[Dict[str, Any]]) -> str:
        """Hand rows to the exporter; returns a reference to the produced report"""
        ...
