"""
Backup pipeline stages.

This module handles the core backup functionality including:
- Source folder snapshots
- Database dumps from a container
- Compression
- Delivery (Telegram and S3)
- Run orchestration
"""

from .executor import PipelineRunner, RunContext, RunResult, RunState, Artifact, ArtifactKind, run_pipeline
from .sources import SourceCollector
from .database import DatabaseDumper
from .compression import create_archive
from .delivery import TelegramDeliverer, S3Deliverer, DeliveryReceipt, create_deliverer

__all__ = [
    'PipelineRunner',
    'RunContext',
    'RunResult',
    'RunState',
    'Artifact',
    'ArtifactKind',
    'run_pipeline',
    'SourceCollector',
    'DatabaseDumper',
    'create_archive',
    'TelegramDeliverer',
    'S3Deliverer',
    'DeliveryReceipt',
    'create_deliverer',
]
