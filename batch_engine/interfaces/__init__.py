"""User-facing interfaces"""
