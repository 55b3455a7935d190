"""DNS forwarding toolkit: plain, DoT and DoH upstreams, bootstrapping, parallel queries and domain routing."""

__version__ = "0.1.0"