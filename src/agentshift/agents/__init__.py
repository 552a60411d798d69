"""Agent orchestration: adapters, process handles, output parsing and limit detection."""
