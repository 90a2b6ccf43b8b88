"""
Services package for the IPTV Cache Service

This package contains all business logic and service layer components.
"""
from iptv_cache.services.catalog_service import CatalogStore
from iptv_cache.services.guide_service import GuideStore
from iptv_cache.services.query_service import CacheService
from iptv_cache.services.scheduler_service import CacheScheduler
from iptv_cache.services.xmltv_parser_service import parse_xmltv_payload

__all__ = [
    'CatalogStore',
    'GuideStore',
    'CacheService',
    'CacheScheduler',
    'parse_xmltv_payload',
]
