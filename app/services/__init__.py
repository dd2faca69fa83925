"""Sync pipeline services"""
