"""payrecon reaper - background reconciliation loops."""
