"""
transport/ — Byte-stream drivers behind a single async contract

    ShellTransport   remote interactive shell over SSH (paramiko)
    SerialTransport  local serial/UART console (pyserial)
"""
