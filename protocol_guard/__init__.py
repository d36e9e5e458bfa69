"""
Protocol Guard - EMS protocol retrieval, validation and resilience.

Usage:
    from protocol_guard import AppConfig, build_service

    service = build_service(AppConfig.from_env())
    response = await service.retrieve("chest pain", patient_age=58)
"""

from .core.config import AppConfig
from .rag.protocol_service import ProtocolRetrievalService, build_service

__version__ = "0.1.0"

__all__ = ["AppConfig", "ProtocolRetrievalService", "build_service"]
