#!/usr/bin/env python3
"""
Main entry point for KVM Backup
"""
from kvm_backup.cli import app


if __name__ == "__main__":
    app()
