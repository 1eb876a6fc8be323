"""Studio directory payment-event processing and membership lifecycle engine"""
