"""Scheduling engine: dates, availability, matching, lifecycle sagas and reminders."""
