"""HTTP API for scheduled agents"""
