"""Core module - configuration, errors, and dependencies"""
