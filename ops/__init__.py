"""
Operations module.
Storage, worker scheduling, pipeline orchestration and performance monitoring.
"""
