"""
Pipeline — decode, inspect, decide, plan and transcode one payload.
"""
