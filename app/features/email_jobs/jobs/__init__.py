"""
Cron-style jobs for the email jobs feature.
"""
