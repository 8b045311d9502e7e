"""Dispatch core: dispatcher, context, delivery and transports."""
