"""
Session Relay

讓控制端（controller）透過公共 MQTT Broker 觀察並指揮另一個互不相識的代理端（agent）。
"""

__version__ = "1.0.0"
