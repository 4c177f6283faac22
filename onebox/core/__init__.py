"""Core ingestion, classification and storage services"""
