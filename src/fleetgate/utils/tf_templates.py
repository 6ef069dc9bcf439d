RESOURCE_TF = """\
variable "cluster"    {{ type = string }}
variable "logical_id" {{ type = string }}
variable "spec"       {{ type = any }}

# Provided via ENV: TF_VAR_credentials
variable "credentials" {{
  type      = map(string)
  sensitive = true
  default   = {{}}
}}

module "resource" {{
  source      = {module_source}
  cluster     = var.cluster
  logical_id  = var.logical_id
  spec        = var.spec
  credentials = var.credentials
}}

output "id" {{
  value = module.resource.id
}}
"""
