# SessionGate
