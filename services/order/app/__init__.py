"""Kitchen order lifecycle and real-time change notifications."""
