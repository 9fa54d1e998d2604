"""
Hardware Detection
Sizes the worker pool from CPU count and available memory
"""

import platform
import logging
from typing import Any, Dict

import psutil

logger = logging.getLogger(__name__)


class HardwareDetector:
    def __init__(self, memory_per_worker_mb: int = 512):
        self.memory_per_worker_mb = max(1, int(memory_per_worker_mb))
        self.system_info = self._get_system_info()

    def _get_system_info(self) -> Dict[str, Any]:
        """Get basic system information"""
        memory = psutil.virtual_memory()
        return {
            'platform': platform.system(),
            'architecture': platform.architecture()[0],
            'cpu_count': psutil.cpu_count(logical=True) or 1,
            'physical_cores': psutil.cpu_count(logical=False) or 1,
            'memory_gb': round(memory.total / (1024 ** 3), 2),
            'available_memory_mb': int(memory.available / (1024 ** 2)),
        }

    def analyze_optimal_workers(self) -> Dict[str, int]:
        """
        Recommend concurrent transcode counts.

        Each transcode is an external encoder process that keeps roughly one
        core busy, so the CPU bound leaves one logical core for the rest of
        the system. The memory bound divides available RAM by the per-worker
        budget.

        Returns:
            Dict with 'conservative', 'recommended' and 'maximum_safe' counts (all >= 1)
        """
        cpu_bound = max(1, self.system_info['cpu_count'] - 1)
        memory_bound = max(1, self.system_info['available_memory_mb'] // self.memory_per_worker_mb)

        recommended = max(1, min(cpu_bound, memory_bound))
        analysis = {
            'cpu_bound': cpu_bound,
            'memory_bound': memory_bound,
            'conservative': max(1, recommended // 2),
            'recommended': recommended,
            'maximum_safe': max(1, min(self.system_info['cpu_count'], memory_bound)),
        }
        logger.debug(f"Worker analysis: {analysis}")
        return analysis

    def recommended_workers(self, configured_cap: int, mode: str = 'recommended') -> int:
        """Worker count = min(configured cap, hardware recommendation for the given mode)"""
        analysis = self.analyze_optimal_workers()
        suggested = analysis.get(mode, analysis['recommended'])
        workers = max(1, min(int(configured_cap), suggested))
        logger.info(f"Using {workers} workers ({mode} suggests {suggested}, configured cap {configured_cap})")
        return workers

    def get_system_report(self) -> str:
        """Generate a short system report"""
        analysis = self.analyze_optimal_workers()
        report = [
            "=== Hardware Detection Report ===",
            f"Platform: {self.system_info['platform']} ({self.system_info['architecture']})",
            f"CPU Cores: {self.system_info['cpu_count']} logical / {self.system_info['physical_cores']} physical",
            f"Memory: {self.system_info['memory_gb']} GB "
            f"({self.system_info['available_memory_mb']} MB available)",
            f"Recommended workers: {analysis['recommended']} "
            f"(conservative {analysis['conservative']}, maximum safe {analysis['maximum_safe']})",
        ]
        return "\n".join(report)
