DEAL_NOT_FOUND = "Negócio não encontrado"
CONTACT_NOT_FOUND = "Contato não encontrado"
LEAD_NOT_FOUND = "Lead não encontrado"
LEAD_CONTACT_NOT_FOUND = "Contato não encontrado"
ORGANIZATION_NOT_FOUND = "Organização não encontrada"
PARTNER_NOT_FOUND = "Parceiro não encontrado"
ACTIVITY_NOT_FOUND = "Atividade não encontrada"
ICP_NOT_FOUND = "ICP não encontrado"
STAGE_NOT_FOUND = "Estágio não encontrado"
PIPELINE_NOT_FOUND = "Pipeline não encontrado"
PRODUCT_NOT_FOUND = "Produto não encontrado"
BUSINESS_LINE_NOT_FOUND = "Linha de negócio não encontrada"
LABEL_NOT_FOUND = "Label não encontrada"

LEAD_ALREADY_CONVERTED = "Lead já foi convertido"
LEAD_CONVERTED_DELETE = "Não é possível excluir um lead já convertido"
LEAD_WITHOUT_CONTACTS = "Lead precisa ter pelo menos um contato antes de ser convertido"
LEAD_CONTACT_CONVERTED_DELETE = "Não é possível excluir um contato já convertido"
ICP_SLUG_EXISTS = "Slug já existe"
INVALID_ENTITY_TYPE = "Tipo de entidade inválido"
INVALID_COMPANY = "Empresa vinculada não encontrada"
INVALID_SORT = "Ordenação inválida"
