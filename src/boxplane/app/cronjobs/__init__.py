"""Cronjob scheduling for boxes."""
