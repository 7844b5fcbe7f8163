"""Pure domain layer. No database or I/O imports."""
