"""Persistence pipeline for scrape sessions: staging, durable commit and delegation API."""
