"""Membership subscription lifecycle service"""
