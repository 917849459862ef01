"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import live, reports, sections

router = APIRouter()

# Report generation, retrieval, conversion and export
router.include_router(reports.router, tags=["reports"])

# Section listing, AI edits and manual changes
router.include_router(sections.router, tags=["sections"])

# Live sync for viewers
router.include_router(live.router, tags=["live"])
