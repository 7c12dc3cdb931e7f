"""Configuration schemas"""
