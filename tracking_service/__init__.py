"""Affiliate tracking service: click tracking, attribution, fraud screening and payouts"""
