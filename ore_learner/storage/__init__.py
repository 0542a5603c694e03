"""Snapshot persistence for learned statistics"""
