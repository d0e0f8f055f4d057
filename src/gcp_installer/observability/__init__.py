"""Observability infrastructure for the installer.

Quick start::

    from gcp_installer.observability import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
    logger.info('step_completed', step='Enabling APIs')
"""

from .logging import bind_installation, configure_logging, get_logger, installation_id_ctx

__all__ = [
    'bind_installation',
    'configure_logging',
    'get_logger',
    'installation_id_ctx',
]
