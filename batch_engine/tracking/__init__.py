"""Performance, cost and progress tracking"""
