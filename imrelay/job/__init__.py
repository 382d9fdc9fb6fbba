"""Delivery tier configuration."""