"""Domain services for locks, access codes and the audit trail."""
