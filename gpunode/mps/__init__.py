"""MPS control daemon management: directory layout, device limits, daemons and log tailing."""