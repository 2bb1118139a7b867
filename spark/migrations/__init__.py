"""Backfill: cursor strategies and the jobs that walk them."""
