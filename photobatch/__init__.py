"""
FastAPI backend for batch product photography generation.
"""
