"""esxi2pve: VMware ESXi to Proxmox VE migration tool."""

__version__ = "0.1.0"
