"""Operator CLI for the S3 package store."""
