"""
Signal Intelligence API Module

FastAPI backend providing REST endpoints for:
- Batch signal processing (classification + feature engineering)
- Hotspot generation, listing and re-ranking
- Health checks
"""
