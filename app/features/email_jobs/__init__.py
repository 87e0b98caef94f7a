"""
Email notification jobs feature.

Schedules mentorship session emails through the delivery queue, tracks
each job and batch in Redis, and exposes progress/retry/cancel endpoints.
"""
