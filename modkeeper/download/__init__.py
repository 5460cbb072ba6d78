"""
ModKeeper 下载层

包含下载编排、准入控制、文件校验等功能。
"""

from modkeeper.download.admission import AdmissionControl
from modkeeper.download.manager import DownloadOrchestrator, DownloadStats
from modkeeper.download.verifier import ArtifactVerifier

__all__ = [
    "AdmissionControl",
    "DownloadOrchestrator",
    "DownloadStats",
    "ArtifactVerifier",
]
